"""
Indexing subsystem exports.
"""

from .aggregator import MarkdownAggregator, format_duration, render
from .config import IndexerConfig
from .engine import MarkdownTaskEngine, ParsingEngine, parse, parse_all, parse_duration
from .errors import IndexingError, InvariantViolation, PublishFailure, ReadFailure
from .indexing import Indexer, NoopIndexer, WhooshIndexer
from .job_queue import RescanJobConfig, RQJobQueue, run_document_change_job, run_rescan_job
from .models import (
    DocumentState,
    DocumentStatus,
    ParseResult,
    ParseWarning,
    Record,
    RecordKind,
    RescanResult,
    SessionRecord,
    TaskRecord,
    UpdateResult,
)
from .repository import InMemoryRecordRepository, RecordRepository, SqlAlchemyRecordRepository
from .storage import DocumentSource, LocalVaultStorage, OutputSink, VaultPaths
from .worker import IndexingWorker

__all__ = [
    "DocumentSource",
    "DocumentState",
    "DocumentStatus",
    "Indexer",
    "IndexerConfig",
    "IndexingError",
    "IndexingWorker",
    "InMemoryRecordRepository",
    "InvariantViolation",
    "LocalVaultStorage",
    "MarkdownAggregator",
    "MarkdownTaskEngine",
    "NoopIndexer",
    "OutputSink",
    "ParseResult",
    "ParseWarning",
    "ParsingEngine",
    "PublishFailure",
    "ReadFailure",
    "Record",
    "RecordKind",
    "RecordRepository",
    "RescanJobConfig",
    "RescanResult",
    "RQJobQueue",
    "SessionRecord",
    "SqlAlchemyRecordRepository",
    "TaskRecord",
    "UpdateResult",
    "VaultPaths",
    "WhooshIndexer",
    "format_duration",
    "parse",
    "parse_all",
    "parse_duration",
    "render",
    "run_document_change_job",
    "run_rescan_job",
]
