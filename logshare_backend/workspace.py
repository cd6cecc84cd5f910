from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ValidationError

from .config import (
    GENERATION_CONFIG_FILENAME,
    GENERATION_MARKER_FILENAME,
    INPUT_FILENAME,
    MARKER_FILENAME,
    OUTPUT_FILENAME,
)
from .errors import SessionNotFound
from .security import resolve_session_path


logger = logging.getLogger(__name__)


class CacheMarker(BaseModel):
    """Which generation fingerprint produced a session's conversation.html."""

    fingerprint: str
    timestamp: datetime


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _write_json(path: Path, payload: dict) -> None:
    path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")


class SessionStore:
    """Session directories under a single storage root.

    Every per-session path goes through resolve_session_path, so callers may
    pass ids straight from a URL: an invalid id raises InvalidIdentifier
    before any filesystem call is made.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root).resolve()

    @property
    def generation_config_path(self) -> Path:
        return self.root / GENERATION_CONFIG_FILENAME

    @property
    def generation_marker_path(self) -> Path:
        return self.root / GENERATION_MARKER_FILENAME

    def ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, session_id: str, label: Optional[str] = None) -> Path:
        return resolve_session_path(self.root, session_id, label)

    def input_path(self, session_id: str) -> Path:
        return self.path_for(session_id, INPUT_FILENAME)

    def output_path(self, session_id: str) -> Path:
        return self.path_for(session_id, OUTPUT_FILENAME)

    def marker_path(self, session_id: str) -> Path:
        return self.path_for(session_id, MARKER_FILENAME)

    def put(self, session_id: str, content: bytes) -> Path:
        self.path_for(session_id).mkdir(parents=True, exist_ok=True)
        path = self.input_path(session_id)
        path.write_bytes(content)
        return path

    def exists(self, session_id: str) -> bool:
        return self.input_path(session_id).is_file()

    def output_exists(self, session_id: str) -> bool:
        return self.output_path(session_id).is_file()

    def read_output(self, session_id: str) -> bytes:
        try:
            return self.output_path(session_id).read_bytes()
        except FileNotFoundError:
            raise SessionNotFound("Session output not found") from None

    def replace_output(self, session_id: str, produced: Path) -> None:
        """Move a finished converter output over conversation.html in one step."""
        os.replace(produced, self.output_path(session_id))

    def write_marker(self, session_id: str, fingerprint: str) -> None:
        _write_json(self.marker_path(session_id), {"fingerprint": fingerprint, "timestamp": _now_iso()})

    def read_marker(self, session_id: str) -> Optional[CacheMarker]:
        """Return the cache marker, or None when it is missing or unreadable.

        A corrupt marker only means the output has to be regenerated, so it is
        not an error for the request.
        """
        path = self.marker_path(session_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError):
            logger.warning("Unreadable cache marker for session %s", session_id)
            return None
        try:
            return CacheMarker.model_validate_json(raw)
        except ValidationError:
            logger.warning("Corrupt cache marker for session %s", session_id)
            return None
