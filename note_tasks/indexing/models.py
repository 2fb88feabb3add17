from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum
from typing import List, Optional, Tuple, Union


class RecordKind(str, Enum):
    TASK = "task"
    SESSION = "session"


class DocumentStatus(str, Enum):
    UNINDEXED = "unindexed"
    INDEXED = "indexed"


@dataclass(frozen=True)
class TaskRecord:
    document_key: str
    line_number: int
    offset: int
    raw_text: str
    text: str
    completed: bool
    tags: Tuple[str, ...] = ()
    due: Optional[date] = None
    start: Optional[date] = None
    done_on: Optional[date] = None
    estimate: Optional[timedelta] = None
    repeat: Optional[timedelta] = None
    # Next occurrence is counted from the completion date rather than the due date.
    repeat_from_completion: bool = False
    # Line number of the enclosing task for indented sub-tasks.
    parent_line: Optional[int] = None

    @property
    def kind(self) -> RecordKind:
        return RecordKind.TASK


@dataclass(frozen=True)
class SessionRecord:
    document_key: str
    line_number: int
    offset: int
    raw_text: str
    text: str
    duration: timedelta
    tag: str = "session"

    @property
    def kind(self) -> RecordKind:
        return RecordKind.SESSION


Record = Union[TaskRecord, SessionRecord]


@dataclass(frozen=True)
class ParseWarning:
    document_key: str
    line_number: int
    message: str
    line_text: str = ""

    def __str__(self) -> str:
        return f"{self.document_key}:{self.line_number}: {self.message}"


@dataclass
class ParseResult:
    document_key: str
    records: List[Record] = field(default_factory=list)
    warnings: List[ParseWarning] = field(default_factory=list)


@dataclass
class DocumentState:
    key: str
    generation: int
    record_count: int
    status: DocumentStatus = DocumentStatus.INDEXED


@dataclass
class RescanResult:
    output: str
    documents: int
    records: int
    warnings: List[ParseWarning] = field(default_factory=list)
    read_failures: List[str] = field(default_factory=list)
    published: bool = False


@dataclass
class UpdateResult:
    key: str
    generation: int
    accepted: bool
    warnings: List[ParseWarning] = field(default_factory=list)
    published: bool = False
