from __future__ import annotations

import itertools
import json
import logging
import threading
from contextlib import ExitStack
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import Boolean, Column, Date, DateTime, Enum, Float, Integer, String, create_engine, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .errors import InvariantViolation
from .models import DocumentState, DocumentStatus, Record, RecordKind, SessionRecord, TaskRecord

logger = logging.getLogger(__name__)

Base = declarative_base()

SnapshotEntries = List[Tuple[str, List[Record]]]
RescanEntries = Mapping[str, Tuple[int, Sequence[Record]]]


class DocumentModel(Base):
    __tablename__ = "documents"
    key = Column(String, primary_key=True)
    generation = Column(Integer, nullable=True)
    deleted = Column(Boolean, default=False, nullable=False)
    record_count = Column(Integer, default=0)
    updated_at = Column(DateTime)


class RecordModel(Base):
    __tablename__ = "records"
    id = Column(Integer, primary_key=True, autoincrement=True)
    document_key = Column(String, index=True)
    position = Column(Integer)
    kind = Column(Enum(RecordKind))
    line_number = Column(Integer)
    char_offset = Column(Integer)
    raw_text = Column(String)
    text = Column(String)
    completed = Column(Boolean)
    tags = Column(String)
    due = Column(Date)
    start = Column(Date)
    done_on = Column(Date)
    estimate_seconds = Column(Float)
    repeat_seconds = Column(Float)
    repeat_from_completion = Column(Boolean)
    parent_line = Column(Integer)
    duration_seconds = Column(Float)
    tag = Column(String)


class GenerationCounterModel(Base):
    __tablename__ = "generation_counter"
    id = Column(Integer, primary_key=True)
    value = Column(Integer, nullable=False, default=0)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _check_owner(key: str, records: Iterable[Record]) -> Tuple[Record, ...]:
    frozen = tuple(records)
    for record in frozen:
        if record.document_key != key:
            raise ValueError(f"Record from {record.document_key} cannot be stored under {key}")
    return frozen


class RecordRepository:
    """
    Keyed index of per-document record lists. Implementations must make
    `upsert` atomic with respect to `snapshot`, serialize writes to the same
    key, and resolve same-key races by generation rather than arrival order:
    a write carrying an older generation than the one recorded for its key
    (including a deletion) is discarded.
    """

    # Generations
    def reserve_generation(self, key: Optional[str] = None) -> int:
        raise NotImplementedError

    def current_generation(self, key: str) -> Optional[int]:
        raise NotImplementedError

    # Writes
    def upsert(self, key: str, records: Iterable[Record], generation: Optional[int] = None) -> bool:
        raise NotImplementedError

    def remove(self, key: str, generation: Optional[int] = None) -> bool:
        raise NotImplementedError

    def replace_all(self, entries: RescanEntries, since: Optional[int] = None, keep: Iterable[str] = ()) -> None:
        """
        Wholesale replacement used by a full rescan. `entries` maps key to
        (generation, records). Keys missing from `entries` are dropped unless
        they are listed in `keep` or were written after generation `since`.
        """
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError

    # Reads
    def snapshot(self) -> SnapshotEntries:
        raise NotImplementedError

    def get_records(self, key: str) -> Optional[List[Record]]:
        raise NotImplementedError

    def list_documents(self) -> List[DocumentState]:
        raise NotImplementedError


class _KeyLocks:
    """Lazily created per-key locks so unrelated keys never wait on each other."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def __call__(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock


class InMemoryRecordRepository(RecordRepository):
    """
    In-process store for local runs and tests. Record lists are held as
    tuples of frozen dataclasses, so a snapshot can share them without copying.
    """

    def __init__(self):
        self._entries: Dict[str, Tuple[int, Tuple[Record, ...]]] = {}
        self._tombstones: Dict[str, int] = {}
        self._key_lock = _KeyLocks()
        self._commit_lock = threading.Lock()
        self._counter = itertools.count(1)
        self._counter_lock = threading.Lock()

    def reserve_generation(self, key: Optional[str] = None) -> int:
        with self._counter_lock:
            return next(self._counter)

    def current_generation(self, key: str) -> Optional[int]:
        with self._commit_lock:
            return self._generation_of(key)

    def _generation_of(self, key: str) -> Optional[int]:
        candidates = []
        entry = self._entries.get(key)
        if entry is not None and entry[0] is not None:
            candidates.append(entry[0])
        if key in self._tombstones:
            candidates.append(self._tombstones[key])
        return max(candidates) if candidates else None

    def upsert(self, key: str, records: Iterable[Record], generation: Optional[int] = None) -> bool:
        frozen = _check_owner(key, records)
        if generation is None:
            generation = self.reserve_generation(key)
        with self._key_lock(key):
            with self._commit_lock:
                current = self._generation_of(key)
                if current is not None and generation < current:
                    logger.debug("Discarding stale upsert for %s (generation %s < %s)", key, generation, current)
                    return False
                self._entries[key] = (generation, frozen)
                self._tombstones.pop(key, None)
        return True

    def remove(self, key: str, generation: Optional[int] = None) -> bool:
        if generation is None:
            generation = self.reserve_generation(key)
        with self._key_lock(key):
            with self._commit_lock:
                current = self._generation_of(key)
                if current is not None and generation < current:
                    logger.debug("Discarding stale removal for %s (generation %s < %s)", key, generation, current)
                    return False
                self._entries.pop(key, None)
                self._tombstones[key] = generation
        return True

    def replace_all(self, entries: RescanEntries, since: Optional[int] = None, keep: Iterable[str] = ()) -> None:
        checked = {key: (generation, _check_owner(key, records)) for key, (generation, records) in entries.items()}
        keep = set(keep)
        with self._commit_lock:
            rebuilt: Dict[str, Tuple[int, Tuple[Record, ...]]] = {}
            for key, (generation, records) in checked.items():
                current = self._generation_of(key)
                if current is not None and generation < current:
                    # A newer change landed while the rescan was running.
                    if key in self._entries:
                        rebuilt[key] = self._entries[key]
                    continue
                rebuilt[key] = (generation, records)
                self._tombstones.pop(key, None)
            for key, entry in self._entries.items():
                if key in rebuilt or key in checked:
                    continue
                if key in keep:
                    rebuilt[key] = entry
                    continue
                if since is not None and entry[0] is not None and entry[0] > since:
                    rebuilt[key] = entry
                    continue
                self._tombstones[key] = since if since is not None else entry[0]
            self._entries = rebuilt

    def clear(self) -> None:
        with self._commit_lock:
            self._entries = {}
            self._tombstones = {}

    def snapshot(self) -> SnapshotEntries:
        with self._commit_lock:
            items = sorted(self._entries.items())
        for key, (generation, _) in items:
            if generation is None:
                raise InvariantViolation(f"Document {key} is indexed without a generation", key=key)
        return [(key, list(records)) for key, (_, records) in items]

    def get_records(self, key: str) -> Optional[List[Record]]:
        with self._commit_lock:
            entry = self._entries.get(key)
        return list(entry[1]) if entry else None

    def list_documents(self) -> List[DocumentState]:
        with self._commit_lock:
            items = sorted(self._entries.items())
        return [
            DocumentState(key=key, generation=generation, record_count=len(records), status=DocumentStatus.INDEXED)
            for key, (generation, records) in items
        ]


class SqlAlchemyRecordRepository(RecordRepository):
    """
    SQL-backed store using SQLAlchemy. Works with SQLite/Postgres URLs and
    survives restarts. Each write runs in a single transaction; snapshots are
    read with a single statement so they observe a committed state.

    Several processes (API, RQ workers) may share one database, so generations
    are drawn from a counter row and every document write is a conditional
    UPDATE that only succeeds while the stored generation is not newer.
    """

    def __init__(self, database_url: str):
        self.engine = create_engine(database_url, future=True)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)
        self._key_lock = _KeyLocks()
        self._ensure_counter()

    def _session(self) -> Session:
        return self.SessionLocal()

    def _ensure_counter(self) -> None:
        with self._session() as session:
            if session.get(GenerationCounterModel, 1) is not None:
                return
            session.add(GenerationCounterModel(id=1, value=0))
            try:
                session.commit()
            except IntegrityError:
                # created concurrently by another process
                session.rollback()

    # region Generations
    def reserve_generation(self, key: Optional[str] = None) -> int:
        stmt = (
            update(GenerationCounterModel)
            .where(GenerationCounterModel.id == 1)
            .values(value=GenerationCounterModel.value + 1)
            .returning(GenerationCounterModel.value)
            .execution_options(synchronize_session=False)
        )
        with self._session() as session:
            value = session.execute(stmt).scalar_one()
            session.commit()
            return value

    def current_generation(self, key: str) -> Optional[int]:
        with self._session() as session:
            model = session.get(DocumentModel, key)
            return model.generation if model else None

    # endregion

    # region Writes
    def upsert(self, key: str, records: Iterable[Record], generation: Optional[int] = None) -> bool:
        frozen = _check_owner(key, records)
        if generation is None:
            generation = self.reserve_generation(key)
        with self._key_lock(key), self._session() as session:
            if not self._claim(session, key, generation, deleted=False, record_count=len(frozen)):
                session.rollback()
                logger.debug("Discarding stale upsert for %s (generation %s)", key, generation)
                return False
            self._write_records(session, key, frozen)
            session.commit()
        return True

    def remove(self, key: str, generation: Optional[int] = None) -> bool:
        if generation is None:
            generation = self.reserve_generation(key)
        with self._key_lock(key), self._session() as session:
            if not self._claim(session, key, generation, deleted=True, record_count=0):
                session.rollback()
                logger.debug("Discarding stale removal for %s (generation %s)", key, generation)
                return False
            session.execute(delete(RecordModel).where(RecordModel.document_key == key))
            session.commit()
        return True

    def replace_all(self, entries: RescanEntries, since: Optional[int] = None, keep: Iterable[str] = ()) -> None:
        checked = {key: (generation, _check_owner(key, records)) for key, (generation, records) in entries.items()}
        keep = set(keep)
        with self._session() as session:
            live = set(session.execute(select(DocumentModel.key).where(DocumentModel.deleted.is_(False))).scalars())
        dropped = sorted(live - set(checked) - keep)

        with ExitStack() as locks:
            # Same lock order as single-key writers: key lock first, then the transaction.
            for key in sorted(set(checked) | set(dropped)):
                locks.enter_context(self._key_lock(key))
            with self._session() as session:
                now = _utcnow()
                for key, (generation, records) in sorted(checked.items()):
                    if self._claim(session, key, generation, deleted=False, record_count=len(records), now=now):
                        self._write_records(session, key, records)
                    else:
                        logger.debug("Keeping newer entry for %s over rescan generation %s", key, generation)
                for key in dropped:
                    stmt = update(DocumentModel).where(DocumentModel.key == key, DocumentModel.deleted.is_(False))
                    values = {"deleted": True, "record_count": 0, "updated_at": now}
                    if since is not None:
                        stmt = stmt.where(or_(DocumentModel.generation.is_(None), DocumentModel.generation <= since))
                        values["generation"] = since
                    result = session.execute(stmt.values(**values).execution_options(synchronize_session=False))
                    if result.rowcount:
                        session.execute(delete(RecordModel).where(RecordModel.document_key == key))
                session.commit()

    def clear(self) -> None:
        with self._session() as session:
            session.execute(delete(RecordModel))
            session.execute(delete(DocumentModel))
            session.commit()

    def _claim(
        self,
        session: Session,
        key: str,
        generation: int,
        deleted: bool,
        record_count: int,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Store `generation` as the key's current generation unless a newer one
        is already recorded. Returns False for a stale write. The check and the
        write are one UPDATE statement, which holds the row (or, on SQLite, the
        database) write lock until the surrounding transaction ends.
        """
        values = {
            "generation": generation,
            "deleted": deleted,
            "record_count": record_count,
            "updated_at": now or _utcnow(),
        }
        stmt = (
            update(DocumentModel)
            .where(DocumentModel.key == key)
            .where(or_(DocumentModel.generation.is_(None), DocumentModel.generation <= generation))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if session.execute(stmt).rowcount:
            return True
        if session.get(DocumentModel, key) is not None:
            return False
        session.add(DocumentModel(key=key, **values))
        session.flush()
        return True

    def _write_records(self, session: Session, key: str, records: Sequence[Record]) -> None:
        session.execute(delete(RecordModel).where(RecordModel.document_key == key))
        for position, record in enumerate(records):
            session.add(self._to_model(record, position))

    # endregion

    # region Reads
    def snapshot(self) -> SnapshotEntries:
        with self._session() as session:
            stmt = (
                select(DocumentModel, RecordModel)
                .outerjoin(RecordModel, RecordModel.document_key == DocumentModel.key)
                .where(DocumentModel.deleted.is_(False))
                .order_by(DocumentModel.key, RecordModel.position)
            )
            rows = session.execute(stmt).all()

        snapshot: Dict[str, List[Record]] = {}
        for doc, record in rows:
            if doc.generation is None:
                raise InvariantViolation(f"Document {doc.key} is indexed without a generation", key=doc.key)
            records = snapshot.setdefault(doc.key, [])
            if record is not None:
                records.append(self._from_model(record))
        return sorted(snapshot.items())

    def get_records(self, key: str) -> Optional[List[Record]]:
        with self._session() as session:
            doc = session.get(DocumentModel, key)
            if doc is None or doc.deleted:
                return None
            stmt = select(RecordModel).where(RecordModel.document_key == key).order_by(RecordModel.position)
            return [self._from_model(m) for m in session.execute(stmt).scalars().all()]

    def list_documents(self) -> List[DocumentState]:
        with self._session() as session:
            stmt = select(DocumentModel).where(DocumentModel.deleted.is_(False)).order_by(DocumentModel.key)
            return [
                DocumentState(
                    key=m.key,
                    generation=m.generation,
                    record_count=int(m.record_count or 0),
                    status=DocumentStatus.INDEXED,
                )
                for m in session.execute(stmt).scalars().all()
            ]

    # endregion

    def _to_model(self, record: Record, position: int) -> RecordModel:
        model = RecordModel(
            document_key=record.document_key,
            position=position,
            kind=record.kind,
            line_number=record.line_number,
            char_offset=record.offset,
            raw_text=record.raw_text,
            text=record.text,
        )
        if isinstance(record, TaskRecord):
            model.completed = record.completed
            model.tags = json.dumps(list(record.tags))
            model.due = record.due
            model.start = record.start
            model.done_on = record.done_on
            model.estimate_seconds = record.estimate.total_seconds() if record.estimate is not None else None
            model.repeat_seconds = record.repeat.total_seconds() if record.repeat is not None else None
            model.repeat_from_completion = record.repeat_from_completion
            model.parent_line = record.parent_line
        else:
            model.duration_seconds = record.duration.total_seconds()
            model.tag = record.tag
        return model

    def _from_model(self, m: RecordModel) -> Record:
        if m.kind == RecordKind.TASK:
            return TaskRecord(
                document_key=m.document_key,
                line_number=m.line_number,
                offset=m.char_offset,
                raw_text=m.raw_text,
                text=m.text,
                completed=bool(m.completed),
                tags=tuple(json.loads(m.tags or "[]")),
                due=m.due,
                start=m.start,
                done_on=m.done_on,
                estimate=timedelta(seconds=m.estimate_seconds) if m.estimate_seconds is not None else None,
                repeat=timedelta(seconds=m.repeat_seconds) if m.repeat_seconds is not None else None,
                repeat_from_completion=bool(m.repeat_from_completion),
                parent_line=m.parent_line,
            )
        return SessionRecord(
            document_key=m.document_key,
            line_number=m.line_number,
            offset=m.char_offset,
            raw_text=m.raw_text,
            text=m.text,
            duration=timedelta(seconds=m.duration_seconds or 0),
            tag=m.tag or "session",
        )
