import secrets

from fastapi import HTTPException, Request

from agentbridge.server.runtime import get_runtime


def _presented_key(request: Request) -> str | None:
    if key := request.headers.get("x-api-key"):
        return key
    auth = request.headers.get("authorization", "")
    if auth.startswith("Bearer "):
        return auth[len("Bearer ") :]
    # EventSource cannot set headers
    return request.query_params.get("token")


async def require_api_key(request: Request) -> None:
    """No-op unless an API key is configured."""
    expected = get_runtime().config.api_key
    if not expected:
        return
    presented = _presented_key(request)
    if presented is None or not secrets.compare_digest(presented, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")
