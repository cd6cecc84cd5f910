from __future__ import annotations

import json
from typing import Optional

from .errors import UploadRejected


def validate_jsonl_upload(filename: Optional[str], data: bytes, max_bytes: int, max_lines: int) -> bytes:
    """Check an uploaded file is a non-empty, well-formed JSONL log.

    Returns the bytes unchanged; raises UploadRejected with the HTTP status
    the client should see.
    """
    if not filename:
        raise UploadRejected("No file uploaded")
    if not filename.endswith(".jsonl"):
        raise UploadRejected("Only .jsonl files allowed")
    if len(data) > max_bytes:
        raise UploadRejected(f"File too large (max {max_bytes // (1024 * 1024)}MB)", status_code=413)
    if not data:
        raise UploadRejected("File is empty")

    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        raise UploadRejected("File is not valid UTF-8") from None

    lines = [(number, line) for number, line in enumerate(text.split("\n"), start=1) if line.strip()]
    if not lines:
        raise UploadRejected("File contains no valid lines")
    if len(lines) > max_lines:
        raise UploadRejected(f"Too many lines (max {max_lines:,})", status_code=413)

    for number, line in lines:
        try:
            json.loads(line)
        except json.JSONDecodeError as e:
            raise UploadRejected(f"Invalid JSONL format on line {number}: {e.msg}") from None
    return data
