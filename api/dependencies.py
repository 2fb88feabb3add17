from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from note_tasks.indexing import (
    IndexerConfig,
    IndexingWorker,
    LocalVaultStorage,
    RecordRepository,
    SqlAlchemyRecordRepository,
    VaultPaths,
    WhooshIndexer,
)


@lru_cache(maxsize=1)
def get_config() -> IndexerConfig:
    return IndexerConfig.from_env()


@lru_cache(maxsize=1)
def get_repo() -> RecordRepository:
    db_url = os.getenv("DATABASE_URL", "sqlite+pysqlite:///./data/note_tasks.db")
    return SqlAlchemyRecordRepository(db_url)


@lru_cache(maxsize=1)
def get_storage() -> LocalVaultStorage:
    root = Path(os.getenv("VAULT_ROOT", "./vault"))
    output_name = os.getenv("OUTPUT_NAME", "output.md")
    return LocalVaultStorage(VaultPaths(root, output_name=output_name))


@lru_cache(maxsize=1)
def get_indexer() -> WhooshIndexer:
    whoosh_dir = Path(os.getenv("WHOOSH_DIR", "./data/whoosh"))
    return WhooshIndexer(whoosh_dir)


@lru_cache(maxsize=1)
def get_worker() -> IndexingWorker:
    storage = get_storage()
    return IndexingWorker(
        repository=get_repo(),
        source=storage,
        sink=storage,
        indexer=get_indexer(),
        config=get_config(),
    )
