"""
Example: index a vault of markdown notes and publish the aggregated task view.

Usage:
    python3 index_vault.py --vault /path/to/vault --output tasks.md
    python3 index_vault.py --vault /path/to/vault --db ./data/note_tasks.db --whoosh-dir ./data/whoosh --search "report"
"""

import argparse
import logging
from dataclasses import replace
from pathlib import Path

from note_tasks.indexing import (
    IndexerConfig,
    IndexingWorker,
    InMemoryRecordRepository,
    LocalVaultStorage,
    NoopIndexer,
    PublishFailure,
    SqlAlchemyRecordRepository,
    VaultPaths,
    WhooshIndexer,
)


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        force=True,
    )


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--vault", required=True, type=Path, help="Vault directory containing markdown notes")
    parser.add_argument("--output", default="output.md", help="Output file name, relative to the vault")
    parser.add_argument("--db", default=None, type=Path, help="SQLite DB path (in-memory index when omitted)")
    parser.add_argument("--whoosh-dir", default=None, type=Path, help="Whoosh index directory")
    parser.add_argument("--search", default=None, help="Search the indexed records after the rescan")
    parser.add_argument("--sessions-first", action="store_true", help="Render sessions before tasks")
    parser.add_argument("--verbose", action="store_true", help="Log parse warnings")
    args = parser.parse_args()

    setup_logging(args.verbose)
    if not args.vault.is_dir():
        raise FileNotFoundError(f"Vault not found: {args.vault}")

    config = IndexerConfig.from_env()
    if args.sessions_first:
        config = replace(config, kind_order=tuple(reversed(config.kind_order)))

    storage = LocalVaultStorage(VaultPaths(args.vault, output_name=args.output))
    if args.db:
        args.db.parent.mkdir(parents=True, exist_ok=True)
        repo = SqlAlchemyRecordRepository(f"sqlite+pysqlite:///{args.db}")
    else:
        repo = InMemoryRecordRepository()
    indexer = WhooshIndexer(args.whoosh_dir) if args.whoosh_dir else NoopIndexer()

    worker = IndexingWorker(repository=repo, source=storage, sink=storage, indexer=indexer, config=config)
    worker.initialize()
    try:
        result = worker.full_rescan()
    except PublishFailure as exc:
        print(f"Publishing failed, previous output kept: {exc}")
        raise SystemExit(1)

    print(f"Indexed {result.documents} documents, {result.records} records -> {storage.paths.output_path}")
    for warning in result.warnings:
        print(f"warning: {warning}")
    for key in result.read_failures:
        print(f"unreadable: {key}")

    if args.search:
        if not isinstance(indexer, WhooshIndexer):
            parser.error("--search requires --whoosh-dir")
        for hit in indexer.search(args.search):
            print(f"{hit['document_key']}:{hit['line_number']} [{hit['kind']}] {hit['text']}")


if __name__ == "__main__":
    main()
