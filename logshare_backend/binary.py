from __future__ import annotations

import shutil
from pathlib import Path
from typing import Optional

from .errors import ToolNotFound


TOOL_NAME = "cclogviewer"

# Docker image location first, then a local `go install`.
DEFAULT_CANDIDATES = (
    Path("/app/bin") / TOOL_NAME,
    Path.home() / "go" / "bin" / TOOL_NAME,
)


def resolve_tool_path(configured: Optional[Path] = None, candidates=DEFAULT_CANDIDATES) -> Path:
    """Find the converter executable.

    An explicitly configured path must exist; it is never silently replaced
    by a different install.
    """
    if configured is not None:
        if Path(configured).is_file():
            return Path(configured).resolve()
        raise ToolNotFound(f"Configured converter {configured} does not exist")

    for candidate in candidates:
        if candidate.is_file():
            return candidate.resolve()

    on_path = shutil.which(TOOL_NAME)
    if on_path:
        return Path(on_path).resolve()

    raise ToolNotFound(
        f"{TOOL_NAME} binary not found. Set LOGSHARE_TOOL_PATH or install it with "
        f"`go install github.com/brads3290/cclogviewer/cmd/cclogviewer@latest`."
    )
