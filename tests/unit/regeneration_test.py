"""Tests for the freshness state machine around the converter."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import TYPE_CHECKING

import pytest

from logshare_backend.converter import ConversionFailed, ConversionTimedOut, HtmlConverter
from logshare_backend.errors import GenerationFailed, InvalidIdentifier
from logshare_backend.fingerprint import GenerationFingerprint
from logshare_backend.regeneration import Freshness, RegenerationOrchestrator
from logshare_backend.security import SessionId, generate_session_id
from logshare_backend.workspace import SessionStore
from tests.conftest import FLAG_PARSER, TOOL_BODIES

if TYPE_CHECKING:
    from tests.conftest import FakeTool


def _new_session(store: SessionStore) -> SessionId:
    sid = generate_session_id()
    store.put(sid, b'{"a":1}\n')
    return sid


def _bump_config(fingerprint: GenerationFingerprint) -> None:
    config = json.loads(fingerprint.config_path.read_text())
    config["styling"]["theme"] = "dark"
    fingerprint.config_path.write_text(json.dumps(config, indent=2))
    fingerprint.invalidate()


class TestClassify:
    def test_no_output_is_stale(self, orchestrator: RegenerationOrchestrator, store: SessionStore) -> None:
        sid = _new_session(store)
        assert orchestrator.classify(sid) is Freshness.STALE

    def test_output_without_marker_is_stale(
        self, orchestrator: RegenerationOrchestrator, store: SessionStore
    ) -> None:
        sid = _new_session(store)
        store.output_path(sid).write_text("<html></html>")
        assert orchestrator.classify(sid) is Freshness.STALE

    def test_matching_marker_is_fresh(
        self, orchestrator: RegenerationOrchestrator, store: SessionStore, fingerprint: GenerationFingerprint
    ) -> None:
        sid = _new_session(store)
        store.output_path(sid).write_text("<html></html>")
        store.write_marker(sid, fingerprint.get())
        assert orchestrator.classify(sid) is Freshness.FRESH

    def test_other_fingerprint_is_stale(self, orchestrator: RegenerationOrchestrator, store: SessionStore) -> None:
        sid = _new_session(store)
        store.output_path(sid).write_text("<html></html>")
        store.write_marker(sid, "0" * 64)
        assert orchestrator.classify(sid) is Freshness.STALE

    def test_corrupt_marker_is_stale(self, orchestrator: RegenerationOrchestrator, store: SessionStore) -> None:
        sid = _new_session(store)
        store.output_path(sid).write_text("<html></html>")
        store.marker_path(sid).write_text("garbage")
        assert orchestrator.classify(sid) is Freshness.STALE


class TestEnsureFresh:
    @pytest.mark.asyncio
    async def test_generates_and_marks(
        self,
        orchestrator: RegenerationOrchestrator,
        store: SessionStore,
        fingerprint: GenerationFingerprint,
        fake_tool: FakeTool,
    ) -> None:
        sid = _new_session(store)
        assert await orchestrator.ensure_fresh(sid) is True
        assert '{"a":1}' in store.read_output(sid).decode()
        marker = store.read_marker(sid)
        assert marker is not None and marker.fingerprint == fingerprint.get()
        assert fake_tool.calls == 1

    @pytest.mark.asyncio
    async def test_second_call_is_noop(
        self, orchestrator: RegenerationOrchestrator, store: SessionStore, fake_tool: FakeTool
    ) -> None:
        sid = _new_session(store)
        assert await orchestrator.ensure_fresh(sid) is True
        assert await orchestrator.ensure_fresh(sid) is False
        assert fake_tool.calls == 1

    @pytest.mark.asyncio
    async def test_force_regenerates_fresh_session(
        self, orchestrator: RegenerationOrchestrator, store: SessionStore, fake_tool: FakeTool
    ) -> None:
        sid = _new_session(store)
        await orchestrator.ensure_fresh(sid)
        assert await orchestrator.ensure_fresh(sid, force=True) is True
        assert fake_tool.calls == 2

    @pytest.mark.asyncio
    async def test_config_change_makes_every_session_stale(
        self,
        orchestrator: RegenerationOrchestrator,
        store: SessionStore,
        fingerprint: GenerationFingerprint,
        fake_tool: FakeTool,
    ) -> None:
        sessions = [_new_session(store) for _ in range(3)]
        for sid in sessions:
            await orchestrator.ensure_fresh(sid)
        before = fingerprint.get()

        _bump_config(fingerprint)
        after = fingerprint.get()
        assert after != before
        assert all(orchestrator.classify(sid) is Freshness.STALE for sid in sessions)

        for sid in sessions:
            assert await orchestrator.ensure_fresh(sid) is True
            marker = store.read_marker(sid)
            assert marker is not None and marker.fingerprint == after
        assert fake_tool.calls == 6

    @pytest.mark.asyncio
    async def test_tool_args_from_config_are_used(
        self,
        store: SessionStore,
        make_tool: Callable[..., FakeTool],
    ) -> None:
        args_file = store.root.parent / "args.txt"
        tool = make_tool(body="")
        tool.path.write_text(f"#!/bin/sh\necho \"$@\" > '{args_file}'\n{FLAG_PARSER}\n{TOOL_BODIES['ok']}\n")
        store.generation_config_path.write_text(json.dumps({"tool_args": ["-verbose"]}))
        fp = GenerationFingerprint(tool.path, store.generation_config_path)
        orch = RegenerationOrchestrator(store, fp, HtmlConverter(tool.path, 5.0))
        sid = _new_session(store)
        await orch.ensure_fresh(sid)
        argv = args_file.read_text().split()
        assert argv[0] == "-verbose"
        assert argv[1:3] == ["-input", str(store.input_path(sid))]
        assert argv[3] == "-output"
        assert store.output_exists(sid) is True

    @pytest.mark.parametrize("mode", ["fail", "partial"])
    @pytest.mark.asyncio
    async def test_failure_leaves_previous_artifacts_untouched(
        self,
        mode: str,
        orchestrator: RegenerationOrchestrator,
        store: SessionStore,
        fingerprint: GenerationFingerprint,
        fake_tool: FakeTool,
    ) -> None:
        sid = _new_session(store)
        await orchestrator.ensure_fresh(sid)
        output_before = store.output_path(sid).read_bytes()
        marker_before = store.marker_path(sid).read_bytes()

        fake_tool.rewrite(mode)
        fingerprint.invalidate()
        with pytest.raises(GenerationFailed) as exc_info:
            await orchestrator.ensure_fresh(sid)

        assert isinstance(exc_info.value.result, ConversionFailed)
        assert exc_info.value.diagnostic
        assert store.output_path(sid).read_bytes() == output_before
        assert store.marker_path(sid).read_bytes() == marker_before
        assert sorted(p.name for p in store.path_for(sid).iterdir()) == [
            ".cache-marker",
            "conversation.html",
            "session.jsonl",
        ]

    @pytest.mark.asyncio
    async def test_failure_on_first_generation_writes_nothing(
        self, store: SessionStore, make_tool: Callable[..., FakeTool]
    ) -> None:
        tool = make_tool("fail")
        fp = GenerationFingerprint(tool.path, store.generation_config_path)
        orch = RegenerationOrchestrator(store, fp, HtmlConverter(tool.path, 5.0))
        sid = _new_session(store)
        with pytest.raises(GenerationFailed, match="malformed entry"):
            await orch.ensure_fresh(sid, force=True)
        assert store.output_exists(sid) is False
        assert store.read_marker(sid) is None

    @pytest.mark.asyncio
    async def test_exit_zero_without_output_fails(
        self, store: SessionStore, make_tool: Callable[..., FakeTool]
    ) -> None:
        tool = make_tool("silent")
        fp = GenerationFingerprint(tool.path, store.generation_config_path)
        orch = RegenerationOrchestrator(store, fp, HtmlConverter(tool.path, 5.0))
        sid = _new_session(store)
        with pytest.raises(GenerationFailed):
            await orch.ensure_fresh(sid)
        assert store.read_marker(sid) is None

    @pytest.mark.asyncio
    async def test_timeout_fails(self, store: SessionStore, make_tool: Callable[..., FakeTool]) -> None:
        tool = make_tool("slow")
        fp = GenerationFingerprint(tool.path, store.generation_config_path)
        orch = RegenerationOrchestrator(store, fp, HtmlConverter(tool.path, 0.2))
        sid = _new_session(store)
        with pytest.raises(GenerationFailed) as exc_info:
            await orch.ensure_fresh(sid)
        assert isinstance(exc_info.value.result, ConversionTimedOut)
        assert store.read_marker(sid) is None

    @pytest.mark.asyncio
    async def test_invalid_id(self, orchestrator: RegenerationOrchestrator, fake_tool: FakeTool) -> None:
        with pytest.raises(InvalidIdentifier):
            await orchestrator.ensure_fresh("../../etc/passwd")
        assert fake_tool.calls == 0

    @pytest.mark.asyncio
    async def test_cancelled_request_lets_converter_finish(
        self, store: SessionStore, make_tool: Callable[..., FakeTool]
    ) -> None:
        tool = make_tool("delayed")
        fp = GenerationFingerprint(tool.path, store.generation_config_path)
        orch = RegenerationOrchestrator(store, fp, HtmlConverter(tool.path, 5.0))
        sid = _new_session(store)

        request = asyncio.create_task(orch.ensure_fresh(sid))
        await asyncio.sleep(0.1)
        request.cancel()
        with pytest.raises(asyncio.CancelledError):
            await request

        await asyncio.gather(*list(orch._inflight))
        assert store.output_exists(sid) is True
        marker = store.read_marker(sid)
        assert marker is not None and marker.fingerprint == fp.get()

    @pytest.mark.asyncio
    async def test_concurrent_views_of_stale_session(
        self, orchestrator: RegenerationOrchestrator, store: SessionStore, fake_tool: FakeTool
    ) -> None:
        sid = _new_session(store)
        results = await asyncio.gather(orchestrator.ensure_fresh(sid), orchestrator.ensure_fresh(sid))
        assert all(results)
        assert 1 <= fake_tool.calls <= 2
        assert '{"a":1}' in store.read_output(sid).decode()
        assert orchestrator.classify(sid) is Freshness.FRESH

    @pytest.mark.asyncio
    async def test_argv_template_from_config(self, store: SessionStore, make_tool: Callable[..., FakeTool]) -> None:
        # A converter that takes plain positional paths instead of flags.
        tool = make_tool(body="")
        tool.path.write_text("#!/bin/sh\ncat \"$1\" > \"$2\"\n")
        store.generation_config_path.write_text(json.dumps({"argv_template": ["{input}", "{output}"]}))
        fp = GenerationFingerprint(tool.path, store.generation_config_path)
        orch = RegenerationOrchestrator(store, fp, HtmlConverter(tool.path, 5.0))
        sid = _new_session(store)
        assert await orch.ensure_fresh(sid) is True
        assert store.read_output(sid) == b'{"a":1}\n'
