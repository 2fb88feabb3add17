from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Tuple

from .models import RecordKind


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_tuple(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if not raw:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class IndexerConfig:
    """
    Explicit configuration handed to the worker at construction time.

    `publish_on_change` decides whether single-document changes and deletions
    re-render and publish the aggregated output. It is off by default, so only
    a full rescan publishes.
    """

    done_markers: Tuple[str, ...] = ("x",)
    session_tags: Tuple[str, ...] = ("session", "pomodoro")
    kind_order: Tuple[RecordKind, ...] = (RecordKind.TASK, RecordKind.SESSION)
    max_document_lines: int = 20000
    max_workers: int = 8
    publish_on_change: bool = False
    strict: bool = False
    include_summary: bool = True

    def __post_init__(self):
        if sorted(k.value for k in self.kind_order) != sorted(k.value for k in RecordKind):
            raise ValueError(f"kind_order must list every record kind exactly once, got {self.kind_order}")
        if self.max_document_lines <= 0:
            raise ValueError("max_document_lines must be positive")
        if self.max_workers <= 0:
            raise ValueError("max_workers must be positive")

    @classmethod
    def from_env(cls) -> "IndexerConfig":
        defaults = cls()
        kind_order = tuple(
            RecordKind(value.lower())
            for value in _env_tuple("NOTE_TASKS_KIND_ORDER", tuple(k.value for k in defaults.kind_order))
        )
        return cls(
            done_markers=_env_tuple("NOTE_TASKS_DONE_MARKERS", defaults.done_markers),
            session_tags=_env_tuple("NOTE_TASKS_SESSION_TAGS", defaults.session_tags),
            kind_order=kind_order,
            max_document_lines=int(os.getenv("NOTE_TASKS_MAX_DOCUMENT_LINES", str(defaults.max_document_lines))),
            max_workers=int(os.getenv("NOTE_TASKS_MAX_WORKERS", str(defaults.max_workers))),
            publish_on_change=_env_bool("NOTE_TASKS_PUBLISH_ON_CHANGE", defaults.publish_on_change),
            strict=_env_bool("NOTE_TASKS_STRICT", defaults.strict),
            include_summary=_env_bool("NOTE_TASKS_INCLUDE_SUMMARY", defaults.include_summary),
        )
