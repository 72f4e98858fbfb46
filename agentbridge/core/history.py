"""Read-only reconstruction of chat history from the agent's own JSONL files.

The agent writes one transcript per conversation under
``<projects_dir>/<project folder>/<conversation>.jsonl``; sub-agents get
their own file under ``<conversation>/subagents/agent-<id>.jsonl``.
"""

from pathlib import Path

from agentbridge.core.errors import TranscriptNotFound
from agentbridge.core.parsing import parse_line
from agentbridge.core.transcript import TranscriptEntry
from agentbridge.logging import get_logger

_logger = get_logger(__name__)


def project_folder(cwd: str) -> str:
    return cwd.replace("/", "-")


def transcript_path(projects_dir: Path, cwd: str, conversation_id: str) -> Path:
    return projects_dir / project_folder(cwd) / f"{conversation_id}.jsonl"


def agent_transcript_path(projects_dir: Path, cwd: str, conversation_id: str, agent_id: str) -> Path:
    return projects_dir / project_folder(cwd) / conversation_id / "subagents" / f"agent-{agent_id}.jsonl"


def read_entries(path: Path) -> list[TranscriptEntry]:
    entries: list[TranscriptEntry] = []
    with path.open(encoding="utf-8", errors="replace") as f:
        for line in f:
            entries.extend(item for item in parse_line(line, with_usage=True) if isinstance(item, TranscriptEntry))
    return entries


def load_transcript(projects_dir: Path, cwd: str, conversation_id: str) -> list[TranscriptEntry]:
    """History of a conversation; a conversation with no file yet has no history."""
    path = transcript_path(projects_dir, cwd, conversation_id)
    if not path.exists():
        _logger.debug("No transcript yet", path=str(path))
        return []
    entries = read_entries(path)
    _logger.debug("Loaded %d transcript entries", len(entries), path=str(path))
    return entries


def load_agent_transcript(projects_dir: Path, cwd: str, conversation_id: str, agent_id: str) -> list[TranscriptEntry]:
    path = agent_transcript_path(projects_dir, cwd, conversation_id, agent_id)
    if not path.exists():
        raise TranscriptNotFound(str(path))
    return read_entries(path)
