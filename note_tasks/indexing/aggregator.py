from __future__ import annotations

from datetime import timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .config import IndexerConfig
from .models import Record, RecordKind, SessionRecord, TaskRecord

Snapshot = Sequence[Tuple[str, Sequence[Record]]]

KIND_HEADINGS = {
    RecordKind.TASK: "Tasks",
    RecordKind.SESSION: "Sessions",
}


def format_duration(value: timedelta) -> str:
    return format_seconds(int(round(value.total_seconds())))


def format_seconds(total: int) -> str:
    if total <= 0:
        return "0m"
    days, rem = divmod(total, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, seconds = divmod(rem, 60)
    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if seconds:
        parts.append(f"{seconds}s")
    return " ".join(parts)


def format_task(task: TaskRecord, depth: int = 0) -> str:
    box = "[x]" if task.completed else "[ ]"
    pieces = [f"{'  ' * depth}- {box} {task.text}"]
    if task.estimate is not None:
        pieces.append(f"🕒 {format_duration(task.estimate)}")
    if task.start is not None:
        pieces.append(f"🛫 {task.start.isoformat()}")
    if task.due is not None:
        pieces.append(f"📅 {task.due.isoformat()}")
    if task.repeat is not None:
        pieces.append(f"🔁 every {format_duration(task.repeat)}")
        if task.repeat_from_completion:
            pieces.append("after completed")
    if task.done_on is not None:
        pieces.append(f"✅ {task.done_on.isoformat()}")
    pieces.append(f"({task.document_key}:{task.line_number})")
    return " ".join(pieces)


def format_session(session: SessionRecord) -> str:
    pieces = [f"- {format_duration(session.duration)}"]
    if session.text:
        pieces.append(session.text)
    pieces.append(f"({session.document_key}:{session.line_number})")
    return " ".join(pieces)


class MarkdownAggregator:
    """
    Renders a store snapshot into one markdown document.

    Records are grouped by kind (in `config.kind_order`), then by document
    key, then by source line. Records sharing a line keep their parse order.
    Each record becomes exactly one list item; sub-tasks are indented under
    their parent task.
    """

    def __init__(self, config: Optional[IndexerConfig] = None):
        self.config = config or IndexerConfig()

    def render(self, snapshot: Snapshot) -> str:
        grouped = self._group(snapshot)
        lines: List[str] = []
        for kind in self.config.kind_order:
            lines.append(f"# {KIND_HEADINGS[kind]}")
            lines.append("")
            by_key = grouped[kind]
            if not by_key:
                lines.append("_None._")
                lines.append("")
                continue
            for key in sorted(by_key):
                lines.append(f"## {key}")
                lines.append("")
                depths: Dict[int, int] = {}
                for record in by_key[key]:
                    lines.append(self._format(record, depths))
                lines.append("")

        if self.config.include_summary:
            lines.extend(self._summary(grouped))
        return "\n".join(lines).rstrip("\n") + "\n"

    def _group(self, snapshot: Snapshot) -> Dict[RecordKind, Dict[str, List[Record]]]:
        grouped: Dict[RecordKind, Dict[str, List[Record]]] = {kind: {} for kind in RecordKind}
        for key, records in snapshot:
            for position, record in enumerate(records):
                grouped[record.kind].setdefault(key, []).append((record.line_number, position, record))
        for by_key in grouped.values():
            for key, items in by_key.items():
                items.sort(key=lambda item: (item[0], item[1]))
                by_key[key] = [item[2] for item in items]
        return grouped

    def _format(self, record: Record, depths: Dict[int, int]) -> str:
        if record.kind is RecordKind.TASK:
            depth = depths.get(record.parent_line, -1) + 1 if record.parent_line is not None else 0
            depths[record.line_number] = depth
            return format_task(record, depth)
        return format_session(record)

    def _summary(self, grouped: Dict[RecordKind, Dict[str, List[Record]]]) -> List[str]:
        tasks = list(_flatten(grouped[RecordKind.TASK].values()))
        sessions = list(_flatten(grouped[RecordKind.SESSION].values()))
        done = sum(1 for t in tasks if t.completed)
        focus = sum(int(round(s.duration.total_seconds())) for s in sessions)
        return [
            "# Summary",
            "",
            f"- Open tasks: {len(tasks) - done}",
            f"- Completed tasks: {done}",
            f"- Sessions: {len(sessions)}",
            f"- Focus time: {format_seconds(focus)}",
        ]


def _flatten(groups: Iterable[List[Record]]) -> Iterable[Record]:
    for records in groups:
        yield from records


def render(snapshot: Snapshot, config: Optional[IndexerConfig] = None) -> str:
    return MarkdownAggregator(config).render(snapshot)
