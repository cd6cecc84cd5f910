from __future__ import annotations

import os
import re
import uuid
from pathlib import Path
from typing import NewType, Optional, Union

from .errors import InvalidIdentifier, PathEscape


SessionId = NewType("SessionId", str)

_SESSION_ID_RE = re.compile(r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-4[0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}")


def generate_session_id() -> SessionId:
    return SessionId(str(uuid.uuid4()))


def normalize_session_id(session_id: object) -> SessionId:
    """Validate and normalize a session id.

    Session ids are capability tokens and the only user input that ever ends
    up in a filesystem path, so the grammar is the canonical UUID4 string and
    nothing else: no whitespace trimming, no braces or urn: prefixes.
    """
    if not isinstance(session_id, str):
        raise InvalidIdentifier()
    # fullmatch: a bare `$` would let a trailing newline through.
    if not _SESSION_ID_RE.fullmatch(session_id):
        raise InvalidIdentifier()
    return SessionId(str(uuid.UUID(session_id)))


def is_safe_basename(name: str) -> bool:
    """Allow only simple filenames (no directories)."""
    if not isinstance(name, str) or not name:
        return False
    if name in {".", ".."} or "\x00" in name:
        return False
    if name != Path(name).name:
        return False
    if "/" in name or "\\" in name:
        return False
    return True


def resolve_session_path(root: Union[str, Path], session_id: str, label: Optional[str] = None) -> Path:
    """Return root/<id>[/<label>] and check it stays inside root.

    Pure path arithmetic: nothing on disk is consulted, so the check holds
    for files that do not exist yet.
    """
    sid = normalize_session_id(session_id)
    base = os.path.abspath(os.fspath(root))
    parts = [base, sid]
    if label is not None:
        if not is_safe_basename(label):
            raise PathEscape(f"Unsafe file label {label!r}")
        parts.append(label)
    candidate = os.path.normpath(os.path.join(*parts))
    if not candidate.startswith(base.rstrip(os.sep) + os.sep):
        raise PathEscape("Path traversal attempt")
    return Path(candidate)
