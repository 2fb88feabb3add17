from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from .aggregator import render
from .config import IndexerConfig
from .models import ParseResult, ParseWarning, Record, SessionRecord, TaskRecord

logger = logging.getLogger(__name__)

_UNIT_SECONDS = {
    "w": 7 * 86400,
    "week": 7 * 86400,
    "weeks": 7 * 86400,
    "d": 86400,
    "day": 86400,
    "days": 86400,
    "h": 3600,
    "hr": 3600,
    "hrs": 3600,
    "hour": 3600,
    "hours": 3600,
    "m": 60,
    "min": 60,
    "mins": 60,
    "minute": 60,
    "minutes": 60,
    "s": 1,
    "sec": 1,
    "secs": 1,
    "second": 1,
    "seconds": 1,
}
# Longest alternatives first so "min" is not read as "m" + "in".
_UNIT_PATTERN = "|".join(sorted(_UNIT_SECONDS, key=len, reverse=True))
_DURATION_PART = rf"(\d+(?:\.\d+)?)\s*({_UNIT_PATTERN})(?![^\W\d_])"
DURATION_PART_RE = re.compile(_DURATION_PART, re.IGNORECASE)
DURATION_RE = re.compile(rf"{_DURATION_PART}(?:\s*{_DURATION_PART})*", re.IGNORECASE)

_PREFIX = r"^(?P<prefix>\s*(?:>\s*)*(?:[-*+]|\d+[.)])\s+)"
TASK_RE = re.compile(_PREFIX + r"\[(?P<marker>.)\]\s+(?P<body>\S.*)$")
ATTEMPTED_TASK_RE = re.compile(_PREFIX + r"\[(?P<rest>.*)$")
LOOKS_LIKE_CHECKBOX_RE = re.compile(_PREFIX + r"\[[^\]]?(?:\]|\s|$)")
LIST_PREFIX_RE = re.compile(_PREFIX + r"(?:\[.\]\s+)?")
FENCE_RE = re.compile(r"^\s*(```|~~~)")
TAG_RE = re.compile(r"(?<![\w#])#([^\W\d][\w/-]*)")
ISO_DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}$")

DATE_FIELDS = {
    "📅": "due",
    "🛫": "start",
    "✈️": "start",
    "✈": "start",
    "✅": "done_on",
}
DURATION_FIELDS = {
    "🕒": "estimate",
    "🔁": "repeat",
}
_METADATA_RE = re.compile(
    "(" + "|".join(re.escape(e) for e in sorted(list(DATE_FIELDS) + list(DURATION_FIELDS), key=len, reverse=True)) + ")"
)
_AFTER_COMPLETION_RE = re.compile(r"\s*after\s+complet(?:ed|ion)\b", re.IGNORECASE)

# 100 years.
MAX_DURATION_SECONDS = 36500 * 86400


def match_duration(text: str, pos: int = 0) -> Optional[Tuple[timedelta, int]]:
    """
    Match a duration such as "25m", "1h 30m" or "90 min" starting at `pos`.
    Returns the parsed duration and the end index of the match, or None if
    there is no duration at `pos`. Raises ValueError if the duration is longer
    than MAX_DURATION_SECONDS.
    """
    m = DURATION_RE.match(text, pos)
    if not m:
        return None
    seconds = 0.0
    for value, unit in DURATION_PART_RE.findall(m.group(0)):
        seconds += float(value) * _UNIT_SECONDS[unit.lower()]
    if seconds > MAX_DURATION_SECONDS:
        raise ValueError(f"duration '{m.group(0)}' is out of range")
    return timedelta(seconds=seconds), m.end()


def parse_duration(text: str) -> Optional[timedelta]:
    stripped = text.strip()
    try:
        matched = match_duration(stripped)
    except ValueError:
        return None
    if matched is None or matched[1] != len(stripped):
        return None
    return matched[0]


def _collapse(text: str) -> str:
    return " ".join(text.split())


def _indent_width(line: str) -> int:
    expanded = line.expandtabs(4)
    return len(expanded) - len(expanded.lstrip())


class ParsingEngine:
    """
    Abstract parsing engine. Implementations must be stateless and
    deterministic: identical text yields identical output on every call.
    """

    engine_version = "abstract"

    def parse(self, document_key: str, text: str) -> ParseResult:
        raise NotImplementedError


class MarkdownTaskEngine(ParsingEngine):
    """
    Line-oriented markdown grammar.

    Checkbox list items become tasks, `#session 25m` style tokens become
    sessions, and list items that look like a checkbox but do not parse are
    reported as warnings. Fenced code blocks are skipped. Everything else is
    prose and ignored.
    """

    engine_version = "markdown-tasks-2"

    def __init__(self, config: Optional[IndexerConfig] = None):
        self.config = config or IndexerConfig()
        self._done_markers = {m.lower() for m in self.config.done_markers}
        tags = "|".join(re.escape(t) for t in sorted(self.config.session_tags, key=len, reverse=True))
        self._session_re = re.compile(rf"(?<![\w#])#({tags})\b", re.IGNORECASE)

    def parse(self, document_key: str, text: str) -> ParseResult:
        result = ParseResult(document_key=document_key)
        in_fence = False
        # (indent, line_number) of the tasks that can still take sub-tasks
        open_tasks: List[Tuple[int, int]] = []
        offset = 0
        limit = self.config.max_document_lines

        for index, raw_line in enumerate(text.split("\n")):
            line_number = index + 1
            line = raw_line.rstrip("\r")
            line_offset = offset
            offset += len(raw_line) + 1

            if line_number > limit:
                result.warnings.append(
                    ParseWarning(
                        document_key,
                        line_number,
                        f"document exceeds {limit} lines; remaining lines were not indexed",
                        line,
                    )
                )
                break

            if FENCE_RE.match(line):
                in_fence = not in_fence
                continue
            if in_fence:
                continue

            list_item = LIST_PREFIX_RE.match(line)
            parent_line: Optional[int] = None
            indent = _indent_width(line)
            if list_item:
                while open_tasks and open_tasks[-1][0] >= indent:
                    open_tasks.pop()
                parent_line = open_tasks[-1][1] if open_tasks else None
            elif line.strip() and indent == 0:
                open_tasks.clear()

            is_task = self._parse_line(document_key, line_number, line_offset, line, result, parent_line)
            if is_task:
                open_tasks.append((indent, line_number))

        if result.warnings:
            logger.debug("Parsed %s with %d warnings", document_key, len(result.warnings))
        return result

    def _parse_line(
        self, key: str, line_number: int, offset: int, line: str, result: ParseResult, parent_line: Optional[int] = None
    ) -> bool:
        warnings = result.warnings
        sessions, session_spans = self._find_sessions(key, line_number, line, warnings)
        task_match = TASK_RE.match(line)
        is_task = bool(task_match) and task_match.group("marker").lower() in self._done_markers | {" "}

        if is_task:
            body = self._strip_spans(line, session_spans, start=task_match.start("body"))
            if not body.strip():
                # Nothing but session tokens: keep them as the task title.
                body = task_match.group("body")
            task = self._build_task(key, line_number, offset, line, task_match, body, warnings)
            if parent_line is not None:
                task = replace(task, parent_line=parent_line)
            result.records.append(task)
        elif LOOKS_LIKE_CHECKBOX_RE.match(line):
            warnings.append(ParseWarning(key, line_number, self._diagnose_checkbox(line), line))

        if sessions:
            prefix = LIST_PREFIX_RE.match(line)
            start = prefix.end() if prefix else 0
            session_text = _collapse(self._strip_spans(line, session_spans, start=start))
            for tag, duration in sessions:
                result.records.append(
                    SessionRecord(
                        document_key=key,
                        line_number=line_number,
                        offset=offset,
                        raw_text=line,
                        text=session_text,
                        duration=duration,
                        tag=tag,
                    )
                )
        return is_task

    def _find_sessions(
        self, key: str, line_number: int, line: str, warnings: List[ParseWarning]
    ) -> Tuple[List[Tuple[str, timedelta]], List[Tuple[int, int]]]:
        sessions: List[Tuple[str, timedelta]] = []
        spans: List[Tuple[int, int]] = []
        for m in self._session_re.finditer(line):
            tag = m.group(1).lower()
            pos = m.end()
            while pos < len(line) and line[pos].isspace():
                pos += 1
            try:
                matched = match_duration(line, pos)
            except ValueError:
                warnings.append(ParseWarning(key, line_number, f"#{tag} annotation has an out-of-range duration", line))
                continue
            if matched is None:
                warnings.append(ParseWarning(key, line_number, f"#{tag} annotation has no duration", line))
                continue
            duration, end = matched
            if duration <= timedelta(0):
                warnings.append(ParseWarning(key, line_number, f"#{tag} annotation has a zero duration", line))
                continue
            sessions.append((tag, duration))
            spans.append((m.start(), end))
        return sessions, spans

    def _strip_spans(self, line: str, spans: List[Tuple[int, int]], start: int = 0) -> str:
        pieces = []
        cursor = start
        for span_start, span_end in spans:
            if span_end <= cursor:
                continue
            pieces.append(line[cursor:max(cursor, span_start)])
            cursor = span_end
        pieces.append(line[cursor:])
        return "".join(pieces)

    def _diagnose_checkbox(self, line: str) -> str:
        m = ATTEMPTED_TASK_RE.match(line)
        rest = m.group("rest") if m else ""
        if len(rest) >= 2 and rest[1] == "]":
            marker = rest[0]
            if marker != " " and marker.lower() not in self._done_markers:
                return f"unknown checkbox marker '{marker}'"
            if not rest[2:].strip():
                return "checkbox has no task text"
            return "missing space after checkbox"
        if rest.startswith("]"):
            return "empty checkbox brackets"
        return "unmatched '[' in checkbox marker"

    def _build_task(
        self,
        key: str,
        line_number: int,
        offset: int,
        line: str,
        task_match: re.Match,
        body: str,
        warnings: List[ParseWarning],
    ) -> TaskRecord:
        fields: Dict[str, object] = {}
        kept: List[str] = []
        cursor = 0
        for m in _METADATA_RE.finditer(body):
            if m.start() < cursor:
                continue
            kept.append(body[cursor:m.start()])
            emoji = m.group(1)
            pos = m.end()
            while pos < len(body) and body[pos].isspace():
                pos += 1
            if emoji in DATE_FIELDS:
                cursor = self._read_date(key, line_number, line, body, emoji, pos, fields, warnings)
            else:
                cursor = self._read_duration(key, line_number, line, body, emoji, pos, fields, warnings)
        kept.append(body[cursor:])
        text = _collapse("".join(kept))
        tags = tuple(dict.fromkeys(TAG_RE.findall(text)))
        return TaskRecord(
            document_key=key,
            line_number=line_number,
            offset=offset,
            raw_text=line,
            text=text,
            completed=task_match.group("marker") != " ",
            tags=tags,
            **fields,
        )

    def _read_date(self, key, line_number, line, body, emoji, pos, fields, warnings) -> int:
        field_name = DATE_FIELDS[emoji]
        token_end = pos
        while token_end < len(body) and not body[token_end].isspace():
            token_end += 1
        token = body[pos:token_end]
        value: Optional[date] = None
        if ISO_DATE_RE.match(token):
            try:
                value = date.fromisoformat(token)
            except ValueError:
                value = None
        if value is None:
            label = field_name.replace("_", " ")
            warnings.append(ParseWarning(key, line_number, f"invalid {label} date '{token}'", line))
            return token_end
        fields[field_name] = value
        return token_end

    def _read_duration(self, key, line_number, line, body, emoji, pos, fields, warnings) -> int:
        field_name = DURATION_FIELDS[emoji]
        if field_name == "repeat" and body[pos:pos + 6].lower() == "every ":
            pos += 6
        try:
            matched = match_duration(body, pos)
        except ValueError:
            matched = None
            pos = DURATION_RE.match(body, pos).end()
        if matched is None or matched[0] <= timedelta(0):
            warnings.append(ParseWarning(key, line_number, f"invalid {field_name} duration after {emoji}", line))
            return pos
        fields[field_name] = matched[0]
        end = matched[1]
        if field_name == "repeat":
            after = _AFTER_COMPLETION_RE.match(body, end)
            if after:
                fields["repeat_from_completion"] = True
                end = after.end()
        return end


def parse(document_key: str, text: str, config: Optional[IndexerConfig] = None) -> ParseResult:
    return MarkdownTaskEngine(config).parse(document_key, text)


def parse_all(
    documents: Iterable[Tuple[str, str]],
    config: Optional[IndexerConfig] = None,
    engine: Optional[ParsingEngine] = None,
) -> str:
    """
    Batch entry point: parse every (key, text) pair independently, union the
    record lists by key and render the union. A key listed twice keeps its
    last text.
    """
    config = config or IndexerConfig()
    engine = engine or MarkdownTaskEngine(config)
    latest: Dict[str, str] = {}
    for key, text in documents:
        latest[key] = text

    with ThreadPoolExecutor(max_workers=config.max_workers) as pool:
        results = list(pool.map(lambda item: engine.parse(item[0], item[1]), sorted(latest.items())))

    snapshot: List[Tuple[str, List[Record]]] = [(r.document_key, list(r.records)) for r in results]
    return render(snapshot, config)
