class BridgeError(RuntimeError):
    """Base for failures reported to the caller that issued a command."""

    status_code = 500

    def __init__(self, message: str, *, chat_id: str | None = None) -> None:
        super().__init__(message)
        self.chat_id = chat_id


# --- Precondition violations ---


class ChatNotFound(BridgeError):
    status_code = 404

    def __init__(self, chat_id: str) -> None:
        super().__init__("Web chat not found", chat_id=chat_id)


class ApprovalNotFound(BridgeError):
    status_code = 404

    def __init__(self, chat_id: str, request_id: str) -> None:
        super().__init__(f"No pending approval: {request_id}", chat_id=chat_id)
        self.request_id = request_id


class TurnInProgress(BridgeError):
    status_code = 409

    def __init__(self, chat_id: str, turn_state: str) -> None:
        super().__init__(f"Chat is still processing the previous message ({turn_state})", chat_id=chat_id)
        self.turn_state = turn_state


class ChatStopped(BridgeError):
    status_code = 409

    def __init__(self, chat_id: str) -> None:
        super().__init__("Chat has been stopped", chat_id=chat_id)


class ProcessNotRunning(BridgeError):
    status_code = 409

    def __init__(self, chat_id: str) -> None:
        super().__init__("Agent process is not running", chat_id=chat_id)


# --- Process-lifecycle failures ---


class SpawnError(BridgeError):
    status_code = 502


class ProcessWriteError(BridgeError):
    status_code = 502


# --- History ---


class TranscriptNotFound(BridgeError):
    status_code = 404

    def __init__(self, path: str) -> None:
        super().__init__("Agent transcript not found")
        self.path = path


class InvalidTransition(ValueError):
    pass
