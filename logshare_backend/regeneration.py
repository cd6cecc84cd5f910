from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import uuid

from .config import OUTPUT_FILENAME
from .converter import ConversionFailed, ConversionSucceeded, HtmlConverter
from .errors import GenerationFailed
from .fingerprint import GenerationFingerprint, GenerationSnapshot
from .security import SessionId, normalize_session_id
from .workspace import SessionStore


logger = logging.getLogger(__name__)


class Freshness(enum.Enum):
    FRESH = "fresh"
    STALE = "stale"


class RegenerationOrchestrator:
    """Keeps each session's conversation.html in step with the generation fingerprint.

    Uploads call ensure_fresh(force=True) and views call ensure_fresh(); both
    go through _regenerate, the only place the converter is invoked. There is
    no per-session lock: two requests for the same stale session may both run
    the converter, and the last rename wins with identical content.
    """

    def __init__(
        self, store: SessionStore, fingerprint: GenerationFingerprint, converter: HtmlConverter
    ) -> None:
        self.store = store
        self.fingerprint = fingerprint
        self.converter = converter
        self._inflight: set[asyncio.Task] = set()

    def classify(self, session_id: str, current: str | None = None) -> Freshness:
        if current is None:
            current = self.fingerprint.get()
        if not self.store.output_exists(session_id):
            return Freshness.STALE
        marker = self.store.read_marker(session_id)
        if marker is None or marker.fingerprint != current:
            return Freshness.STALE
        return Freshness.FRESH

    async def ensure_fresh(self, session_id: str, force: bool = False) -> bool:
        """Regenerate the session's HTML if it is stale. Returns True if it ran."""
        sid = normalize_session_id(session_id)
        snapshot = self.fingerprint.snapshot()
        current = snapshot.fingerprint
        if not force and self.classify(sid, current) is Freshness.FRESH:
            return False

        # The converter keeps running if the request is cancelled, so the
        # output and marker end up consistent for the next viewer.
        task = asyncio.ensure_future(self._regenerate(sid, snapshot))
        self._inflight.add(task)
        task.add_done_callback(self._finished)
        await asyncio.shield(task)
        return True

    def _finished(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        # Mark the exception as retrieved when the awaiting request is gone.
        if not task.cancelled():
            task.exception()

    async def _regenerate(self, sid: SessionId, snapshot: GenerationSnapshot) -> None:
        logger.info("Regenerating HTML for session %s", sid)
        tmp_path = self.store.path_for(sid, f".{OUTPUT_FILENAME}.{uuid.uuid4().hex}.tmp")
        try:
            result = await self.converter.convert(
                self.store.input_path(sid), tmp_path, snapshot.tool_args, snapshot.argv_template
            )
            if isinstance(result, ConversionSucceeded):
                if not tmp_path.is_file():
                    result = ConversionFailed(returncode=0, diagnostic="converter exited 0 without writing output")
                else:
                    self.store.replace_output(sid, tmp_path)
                    self.store.write_marker(sid, snapshot.fingerprint)
                    return
            logger.error("Converter failed for session %s: %s", sid, result.diagnostic)
            raise GenerationFailed(sid, result, result.diagnostic)
        finally:
            with contextlib.suppress(FileNotFoundError):
                tmp_path.unlink()
