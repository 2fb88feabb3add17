from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from redis import Redis
from rq import Queue, Worker

from .config import IndexerConfig
from .indexing import NoopIndexer, WhooshIndexer
from .repository import SqlAlchemyRecordRepository
from .storage import LocalVaultStorage, VaultPaths
from .worker import IndexingWorker


@dataclass
class RescanJobConfig:
    database_url: str
    vault_root: str
    output_name: str = "output.md"
    whoosh_index_dir: Optional[str] = None
    indexer_config: IndexerConfig = field(default_factory=IndexerConfig)


def build_worker(config: RescanJobConfig) -> IndexingWorker:
    repo = SqlAlchemyRecordRepository(config.database_url)
    storage = LocalVaultStorage(VaultPaths(Path(config.vault_root), output_name=config.output_name))
    indexer = WhooshIndexer(Path(config.whoosh_index_dir)) if config.whoosh_index_dir else NoopIndexer()
    return IndexingWorker(
        repository=repo,
        source=storage,
        sink=storage,
        indexer=indexer,
        config=config.indexer_config,
    )


def run_rescan_job(config: RescanJobConfig) -> dict:
    """
    RQ task entrypoint. Creates all required components, rescans the vault
    and publishes the aggregated output.
    """
    result = build_worker(config).full_rescan()
    return {
        "documents": result.documents,
        "records": result.records,
        "warnings": len(result.warnings),
        "read_failures": result.read_failures,
    }


def run_document_change_job(key: str, generation: int, config: RescanJobConfig) -> dict:
    update = build_worker(config).on_document_changed(key, generation=generation)
    return {"key": key, "generation": generation, "accepted": update.accepted}


class RQJobQueue:
    """
    Redis-backed job queue using RQ. The queue pushes jobs to Redis and workers
    can be started by calling `work()` in a dedicated process.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379/0", queue_name: str = "note-index"):
        self.redis = Redis.from_url(redis_url)
        self.queue = Queue(queue_name, connection=self.redis)

    def enqueue_rescan(self, config: RescanJobConfig, job_id: str = "full-rescan"):
        """
        Enqueue a full rescan. The fixed job id keeps at most one rescan known
        to RQ under that id.
        """
        return self.queue.enqueue(run_rescan_job, config, job_id=job_id, retry=None)

    def enqueue_document_change(self, key: str, config: RescanJobConfig):
        """
        Reserve the generation now, at notification time, so the change keeps
        its place even if jobs finish out of order.
        """
        generation = SqlAlchemyRecordRepository(config.database_url).reserve_generation(key)
        return self.queue.enqueue(run_document_change_job, key, generation, config)

    def work(self):
        worker = Worker([self.queue], connection=self.redis)
        worker.work(with_scheduler=True)
