"""Shared fixtures: a scratch storage root and a fake converter executable."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import pytest

from logshare_backend.converter import HtmlConverter
from logshare_backend.fingerprint import GenerationFingerprint
from logshare_backend.regeneration import RegenerationOrchestrator
from logshare_backend.workspace import SessionStore

# Shell bodies for the fake converter. The wrapper parses flags the way
# cclogviewer does and leaves the paths in $in and $out.
TOOL_BODIES = {
    "ok": "{ printf '<html><body><pre>'; cat \"$in\"; printf '</pre></body></html>\\n'; } > \"$out\"",
    "fail": "echo 'cclogviewer: malformed entry' >&2\nexit 3",
    "partial": "printf '<html>partial' > \"$out\"\necho 'crashed halfway' >&2\nexit 1",
    "silent": "exit 0",
    "slow": "exec sleep 5",
    "delayed": "sleep 0.5\n{ printf '<html>'; cat \"$in\"; printf '</html>\\n'; } > \"$out\"",
}

FLAG_PARSER = """in=""
out=""
while [ "$#" -gt 0 ]; do
  case "$1" in
    -input) in="$2"; shift 2 ;;
    -output) out="$2"; shift 2 ;;
    -*) shift ;;
    *) break ;;
  esac
done
if [ -z "$in" ] || [ -z "$out" ]; then
  echo "Usage: cclogviewer -input <file.jsonl> -output <file.html>" >&2
  exit 2
fi"""


@dataclass
class FakeTool:
    path: Path
    calls_file: Path

    @property
    def calls(self) -> int:
        if not self.calls_file.exists():
            return 0
        return len(self.calls_file.read_text().splitlines())

    def rewrite(self, mode: str) -> None:
        """Swap the converter's behaviour (and therefore its content hash)."""
        _write_script(self.path, self.calls_file, TOOL_BODIES[mode])


def _write_script(path: Path, calls_file: Path, body: str) -> None:
    path.write_text(
        "#!/bin/sh\n"
        f"echo call >> '{calls_file}'\n"
        f"{FLAG_PARSER}\n"
        f"{body}\n"
    )
    path.chmod(0o755)


@pytest.fixture
def make_tool(tmp_path: Path) -> Callable[..., FakeTool]:
    def _make(mode: str = "ok", body: str | None = None, name: str = "cclogviewer") -> FakeTool:
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir(exist_ok=True)
        tool = FakeTool(path=bin_dir / name, calls_file=tmp_path / f"{name}.calls")
        _write_script(tool.path, tool.calls_file, body if body is not None else TOOL_BODIES[mode])
        return tool

    return _make


@pytest.fixture
def fake_tool(make_tool: Callable[..., FakeTool]) -> FakeTool:
    return make_tool("ok")


@pytest.fixture
def store(tmp_path: Path) -> SessionStore:
    s = SessionStore(tmp_path / "storage")
    s.ensure_root()
    return s


@pytest.fixture
def fingerprint(store: SessionStore, fake_tool: FakeTool) -> GenerationFingerprint:
    return GenerationFingerprint(fake_tool.path, store.generation_config_path)


@pytest.fixture
def orchestrator(
    store: SessionStore, fingerprint: GenerationFingerprint, fake_tool: FakeTool
) -> RegenerationOrchestrator:
    return RegenerationOrchestrator(store, fingerprint, HtmlConverter(fake_tool.path, timeout_seconds=5.0))
