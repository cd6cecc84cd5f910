from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Union


logger = logging.getLogger(__name__)

DIAGNOSTIC_TAIL_CHARS = 2000

# cclogviewer takes Go-style flags: `cclogviewer -input <in> -output <out>`.
INPUT_PLACEHOLDER = "{input}"
OUTPUT_PLACEHOLDER = "{output}"
DEFAULT_ARGV_TEMPLATE = ("-input", INPUT_PLACEHOLDER, "-output", OUTPUT_PLACEHOLDER)


@dataclass(frozen=True)
class ConversionSucceeded:
    pass


@dataclass(frozen=True)
class ConversionFailed:
    # None when the process could not be started at all.
    returncode: Optional[int]
    diagnostic: str


@dataclass(frozen=True)
class ConversionTimedOut:
    timeout: float

    @property
    def diagnostic(self) -> str:
        return f"converter timed out after {self.timeout:g}s"


ConversionResult = Union[ConversionSucceeded, ConversionFailed, ConversionTimedOut]


def build_argv(
    input_path: Path,
    output_path: Path,
    extra_args: Sequence[str] = (),
    argv_template: Sequence[str] = DEFAULT_ARGV_TEMPLATE,
) -> list[str]:
    """Converter arguments: extra_args, then the template with paths filled in."""
    rendered = [
        arg.replace(INPUT_PLACEHOLDER, str(input_path)).replace(OUTPUT_PLACEHOLDER, str(output_path))
        for arg in argv_template
    ]
    return [*extra_args, *rendered]


def _tail(stderr: bytes, stdout: bytes) -> str:
    text = (stderr or stdout or b"").decode("utf-8", errors="replace").strip()
    return text[-DIAGNOSTIC_TAIL_CHARS:]


class HtmlConverter:
    """Runs the external JSONL -> HTML converter with a hard timeout."""

    def __init__(self, tool_path: Path, timeout_seconds: float) -> None:
        self.tool_path = Path(tool_path)
        self.timeout_seconds = timeout_seconds

    async def convert(
        self,
        input_path: Path,
        output_path: Path,
        extra_args: Sequence[str] = (),
        argv_template: Sequence[str] = DEFAULT_ARGV_TEMPLATE,
    ) -> ConversionResult:
        args = build_argv(input_path, output_path, extra_args, argv_template)
        try:
            proc = await asyncio.create_subprocess_exec(
                str(self.tool_path),
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return ConversionFailed(returncode=None, diagnostic=f"failed to execute converter: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            logger.warning("Converter killed after %.1fs on %s", self.timeout_seconds, input_path)
            return ConversionTimedOut(timeout=self.timeout_seconds)

        if proc.returncode != 0:
            return ConversionFailed(returncode=proc.returncode, diagnostic=_tail(stderr, stdout))
        return ConversionSucceeded()
