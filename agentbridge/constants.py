# --- Agent invocation ---

DEFAULT_AGENT_PATH = "claude"
DEFAULT_MAX_TURNS = 50
SPAWN_GRACE_SECONDS = 1.0
STOP_TIMEOUT_SECONDS = 5.0

STREAM_FLAGS = (
    "-p",
    "--verbose",
    "--output-format",
    "stream-json",
    "--input-format",
    "stream-json",
)
ASSISTED_FLAGS = ("--permission-mode", "default", "--permission-prompt-tool", "stdio")
UNRESTRICTED_FLAGS = ("--dangerously-skip-permissions",)


# --- Wire protocol ---

CAN_USE_TOOL = "can_use_tool"
SUBAGENT_TOOL_NAME = "Task"
DEFAULT_DENY_MESSAGE = "User denied this action"

# asyncio StreamReader buffer; single stream-json lines can carry large tool output
STDOUT_READ_LIMIT = 16 * 1024 * 1024


# --- Content Truncation Limits ---

INPUT_PREVIEW_LIMIT = 500
TOOL_OUTPUT_LIMIT = 500
PROMPT_PREVIEW_LIMIT = 200
STDERR_PREVIEW_LIMIT = 200
LOG_TEXT_PREVIEW = 50


# --- Server ---

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3001
SSE_KEEPALIVE_SECONDS = 15.0
