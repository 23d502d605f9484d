"""Persist finished agent turns to a lightweight JSON-lines audit log."""

import json
import logging
from pathlib import Path

from autoloop.config import settings
from autoloop.core.schema import FinalMessage

logger = logging.getLogger(__name__)

_LOG_NAME = "autoloop_turns.jsonl"


def log_path() -> Path:
    return Path(settings.DATA_DIR) / _LOG_NAME


def init_turn_log(path: Path | None = None) -> None:
    """
    Ensure the log file exists.
    This is called at application startup to prepare the environment.
    """
    path = path or log_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    if not path.exists():
        path.touch()


def save_turn(
    session_id: str, user_message: str, reply: FinalMessage, path: Path | None = None
) -> None:
    """Append one finished turn (the user message and the final envelope) to the audit trail."""
    path = path or log_path()
    record = {
        "session_id": session_id,
        "user_message": user_message,
        "reply": reply.model_dump(mode="json"),
    }
    try:
        with path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record) + "\n")
    except OSError as exc:
        logger.warning("Could not write turn log %s: %s", path, exc)
