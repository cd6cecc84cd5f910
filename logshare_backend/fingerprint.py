"""Fingerprint of the current way HTML artifacts are produced.

The fingerprint covers the converter binary and the generation config by
content, so replacing either (even by one byte) marks every cached
conversation.html as stale.
"""
from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .converter import DEFAULT_ARGV_TEMPLATE, INPUT_PLACEHOLDER, OUTPUT_PLACEHOLDER
from .errors import GenerationConfigError


logger = logging.getLogger(__name__)

_CHUNK = 1024 * 1024


class Styling(BaseModel):
    custom_css: bool = False
    theme: str = "default"


class GenerationConfig(BaseModel):
    version: str = "1.0.0"
    styling: Styling = Field(default_factory=Styling)
    tool_args: list[str] = Field(default_factory=list)
    # {input} and {output} are replaced with the session paths.
    argv_template: list[str] = Field(default_factory=lambda: list(DEFAULT_ARGV_TEMPLATE))

    @field_validator("argv_template")
    @classmethod
    def _needs_both_paths(cls, value: list[str]) -> list[str]:
        joined = " ".join(value)
        if INPUT_PLACEHOLDER not in joined or OUTPUT_PLACEHOLDER not in joined:
            raise ValueError(f"argv_template must contain {INPUT_PLACEHOLDER} and {OUTPUT_PLACEHOLDER}")
        return value


DEFAULT_GENERATION_CONFIG = GenerationConfig()


def hash_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def ensure_generation_config(path: Path) -> bool:
    """Write the default generation config if none exists. Returns True if written."""
    if path.exists():
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(DEFAULT_GENERATION_CONFIG.model_dump(), indent=2), encoding="utf-8")
    logger.info("Created default generation config at %s", path)
    return True


def load_generation_config(path: Path, raw: Optional[bytes] = None) -> GenerationConfig:
    if raw is None:
        raw = path.read_bytes()
    try:
        return GenerationConfig.model_validate_json(raw)
    except ValidationError as e:
        raise GenerationConfigError(f"Invalid generation config {path}: {e}") from e


@dataclass(frozen=True)
class GenerationSnapshot:
    fingerprint: str
    tool_args: tuple[str, ...]
    argv_template: tuple[str, ...] = DEFAULT_ARGV_TEMPLATE


class GenerationFingerprint:
    """Memoized generation fingerprint.

    Constructed explicitly and passed around, so tests get isolated
    instances. Two coroutines hitting an empty memo may both compute it; the
    result is the same either way.
    """

    def __init__(self, tool_path: Path, config_path: Path) -> None:
        self.tool_path = Path(tool_path)
        self.config_path = Path(config_path)
        self._snapshot: Optional[GenerationSnapshot] = None

    def _compute(self) -> GenerationSnapshot:
        ensure_generation_config(self.config_path)
        # Hash exactly the bytes that were parsed.
        raw_config = self.config_path.read_bytes()
        config = load_generation_config(self.config_path, raw_config)
        binary_hash = hash_file(self.tool_path)
        config_hash = hashlib.sha256(raw_config).hexdigest()
        combined = hashlib.sha256(f"{binary_hash}:{config_hash}".encode("ascii")).hexdigest()
        return GenerationSnapshot(
            fingerprint=combined,
            tool_args=tuple(config.tool_args),
            argv_template=tuple(config.argv_template),
        )

    def snapshot(self) -> GenerationSnapshot:
        snapshot = self._snapshot
        if snapshot is None:
            snapshot = self._compute()
            self._snapshot = snapshot
        return snapshot

    def get(self) -> str:
        return self.snapshot().fingerprint

    def tool_args(self) -> tuple[str, ...]:
        return self.snapshot().tool_args

    def invalidate(self) -> None:
        self._snapshot = None


def initialize_generation_marker(fingerprint: GenerationFingerprint, marker_path: Path) -> str:
    """Compute the fingerprint at startup and write a marker for operators.

    The marker is diagnostics only; nothing reads it back.
    """
    value = fingerprint.get()
    marker = {
        "generation_hash": value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "binary_path": str(fingerprint.tool_path),
        "config_path": str(fingerprint.config_path),
    }
    marker_path.write_text(json.dumps(marker, indent=2), encoding="utf-8")
    logger.info("Generation fingerprint %s", value)
    return value
