"""Append-only registry of prompt versions.

Each registered prompt gets a sha256-derived 8-hex checksum and a version
label "v{n}-{checksum}", where n counts versions of that prompt id.
Registering content identical to the current version is a no-op.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PromptVersion:
    id: str
    version: str
    checksum: str
    content: str
    created_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)


def prompt_checksum(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:8]


class PromptRegistry:
    def __init__(self):
        self._versions: list[PromptVersion] = []
        self._current: dict[str, PromptVersion] = {}

    def register(self, prompt_id: str, content: str, metadata: dict[str, Any] | None = None) -> PromptVersion:
        checksum = prompt_checksum(content)
        current = self._current.get(prompt_id)
        if current is not None and current.checksum == checksum and current.content == content:
            return current

        number = len(self.history(prompt_id)) + 1
        version = PromptVersion(
            id=prompt_id,
            version=f"v{number}-{checksum}",
            checksum=checksum,
            content=content,
            created_at=datetime.now(UTC),
            metadata=dict(metadata or {}),
        )
        self._versions.append(version)
        self._current[prompt_id] = version
        logger.info(
            "prompt_registered",
            prompt_id=prompt_id,
            version=version.version,
            checksum=checksum,
            content_length=len(content),
        )
        return version

    def get(self, prompt_id: str) -> PromptVersion | None:
        return self._current.get(prompt_id)

    def history(self, prompt_id: str) -> list[PromptVersion]:
        return [v for v in self._versions if v.id == prompt_id]

    def log_usage(
        self,
        version: PromptVersion,
        operation: str,
        correlation_id: str | None = None,
        **context: Any,
    ) -> None:
        logger.info(
            "prompt_used",
            operation=operation,
            prompt_id=version.id,
            prompt_version=version.version,
            prompt_checksum=version.checksum,
            correlation_id=correlation_id,
            **context,
        )

    def validate_integrity(self, prompt_id: str, expected_checksum: str) -> bool:
        current = self._current.get(prompt_id)
        if current is None:
            logger.warning("prompt_not_found", prompt_id=prompt_id)
            return False
        if current.checksum != expected_checksum:
            logger.warning(
                "prompt_checksum_mismatch",
                prompt_id=prompt_id,
                expected_checksum=expected_checksum,
                actual_checksum=current.checksum,
            )
            return False
        return True

    def export(self) -> list[PromptVersion]:
        return list(self._versions)

    def stats(self) -> dict[str, dict[str, Any]]:
        stats: dict[str, dict[str, Any]] = {}
        for prompt_id, current in self._current.items():
            history = self.history(prompt_id)
            stats[prompt_id] = {
                "current_version": current.version,
                "current_checksum": current.checksum,
                "total_versions": len(history),
                "first_created": history[0].created_at,
                "last_updated": current.created_at,
                "content_length": len(current.content),
            }
        return stats


_registry: PromptRegistry | None = None


def get_prompt_registry() -> PromptRegistry:
    global _registry
    if _registry is None:
        _registry = PromptRegistry()
    return _registry
