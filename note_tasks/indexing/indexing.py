from __future__ import annotations

import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from whoosh import index
from whoosh.fields import BOOLEAN, ID, NUMERIC, TEXT, Schema
from whoosh.qparser import QueryParser

from .models import Record, RecordKind


class Indexer(Protocol):
    def index_document(self, key: str, records: Iterable[Record]) -> None:
        ...

    def delete_document(self, key: str) -> None:
        ...

    def rebuild(self, snapshot: Sequence[Tuple[str, Sequence[Record]]]) -> None:
        ...

    def clear(self) -> None:
        ...


class NoopIndexer:
    """
    Default indexer stub. Keeps the worker wired without pulling in Whoosh.
    """

    def index_document(self, key: str, records: Iterable[Record]) -> None:
        return None

    def delete_document(self, key: str) -> None:
        return None

    def rebuild(self, snapshot: Sequence[Tuple[str, Sequence[Record]]]) -> None:
        return None

    def clear(self) -> None:
        return None


class WhooshIndexer:
    """
    File-system backed Whoosh index over extracted records. Re-indexing a
    document first deletes its existing entries, so repeated calls are
    idempotent.

    Whoosh allows one writer per index. Writers from this process are
    serialized by a lock; a writer held by another process is waited on for
    up to `lock_timeout` seconds.
    """

    def __init__(self, index_dir: Path, lock_timeout: float = 10.0):
        self.lock_timeout = lock_timeout
        self._write_lock = threading.Lock()
        self.index_dir = Path(index_dir)
        self.index_dir.mkdir(parents=True, exist_ok=True)
        self.schema = Schema(
            record_id=ID(stored=True, unique=True),
            document_key=ID(stored=True),
            kind=ID(stored=True),
            line_number=NUMERIC(stored=True, sortable=True),
            completed=BOOLEAN(stored=True),
            text=TEXT(stored=True),
        )
        if index.exists_in(self.index_dir):
            self.ix = index.open_dir(self.index_dir)
        else:
            self.ix = index.create_in(self.index_dir, self.schema)

    def index_document(self, key: str, records: Iterable[Record]) -> None:
        with self._write_lock:
            writer = self._writer()
            writer.delete_by_term("document_key", key)
            self._add_records(writer, key, records)
            writer.commit()

    def delete_document(self, key: str) -> None:
        with self._write_lock:
            writer = self._writer()
            writer.delete_by_term("document_key", key)
            writer.commit()

    def rebuild(self, snapshot: Sequence[Tuple[str, Sequence[Record]]]) -> None:
        with self._write_lock:
            self.ix = index.create_in(self.index_dir, self.schema)
            writer = self._writer()
            for key, records in snapshot:
                self._add_records(writer, key, records)
            writer.commit()

    def clear(self) -> None:
        with self._write_lock:
            self.ix = index.create_in(self.index_dir, self.schema)

    def _writer(self):
        return self.ix.writer(timeout=self.lock_timeout)

    def _add_records(self, writer, key: str, records: Iterable[Record]) -> None:
        for position, record in enumerate(records):
            writer.add_document(
                record_id=f"{key}#{record.kind.value}:{record.line_number}:{position}",
                document_key=key,
                kind=record.kind.value,
                line_number=record.line_number,
                completed=bool(getattr(record, "completed", False)),
                text=record.text or "",
            )

    def search(self, query_str: str, limit: int = 10, kind: Optional[RecordKind] = None) -> List[Dict]:
        """
        Return a list of plain dicts so callers are safe after the searcher closes.
        """
        qp = QueryParser("text", schema=self.schema)
        q = qp.parse(query_str)
        with self.ix.searcher() as searcher:
            results = searcher.search(q, limit=None if kind else limit)
            hits = []
            for hit in results:
                fields = hit.fields()
                if kind is not None and fields.get("kind") != kind.value:
                    continue
                hits.append(
                    {
                        "document_key": fields.get("document_key"),
                        "kind": fields.get("kind"),
                        "line_number": fields.get("line_number"),
                        "completed": fields.get("completed"),
                        "text": fields.get("text"),
                    }
                )
                if len(hits) >= limit:
                    break
            return hits
