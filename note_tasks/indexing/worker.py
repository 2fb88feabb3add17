from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, List, Optional, Tuple

from .aggregator import MarkdownAggregator
from .config import IndexerConfig
from .engine import MarkdownTaskEngine, ParsingEngine
from .errors import InvariantViolation, PublishFailure, ReadFailure
from .indexing import Indexer, NoopIndexer
from .models import DocumentStatus, ParseResult, ParseWarning, RescanResult, UpdateResult
from .repository import RecordRepository
from .storage import DocumentSource, OutputSink

logger = logging.getLogger(__name__)

_Outcome = Tuple[str, int, Optional[ParseResult], Optional[ReadFailure]]


class IndexingWorker:
    """
    Drives the index through full rescans and single-document updates.

    The worker holds no state of its own beyond its collaborators: the
    repository owns the records and generations, the source/sink adapters own
    document I/O, and the indexer mirrors the repository for search.
    """

    def __init__(
        self,
        repository: RecordRepository,
        engine: Optional[ParsingEngine] = None,
        source: Optional[DocumentSource] = None,
        sink: Optional[OutputSink] = None,
        indexer: Optional[Indexer] = None,
        config: Optional[IndexerConfig] = None,
    ):
        self.config = config or IndexerConfig()
        self.repo = repository
        self.engine = engine or MarkdownTaskEngine(self.config)
        self.source = source
        self.sink = sink
        self.indexer = indexer or NoopIndexer()
        self.aggregator = MarkdownAggregator(self.config)

    def initialize(self) -> None:
        self.repo.clear()
        self.indexer.clear()
        logger.info("Index initialized")

    def full_rescan(self, documents: Optional[Iterable[Tuple[str, str]]] = None, publish: bool = True) -> RescanResult:
        """
        Re-parse every document and replace the repository wholesale.

        `documents` are (key, text) pairs; when omitted, keys are enumerated
        from the document source and read concurrently. A document that cannot
        be read keeps its previous records. With `publish` off the rebuilt
        output is only returned. Raises PublishFailure if the rendered output
        could not be published.
        """
        since = self.repo.reserve_generation()
        if documents is None:
            if self.source is None:
                raise ValueError("full_rescan needs documents or a document source")
            jobs: Dict[str, Optional[str]] = {key: None for key in self.source.list_keys()}
        else:
            jobs = {}
            for key, text in documents:
                jobs[key] = text

        with ThreadPoolExecutor(max_workers=self.config.max_workers) as pool:
            futures = [pool.submit(self._load_and_parse, key, text) for key, text in sorted(jobs.items())]
            outcomes: List[_Outcome] = [future.result() for future in futures]

        entries = {}
        warnings: List[ParseWarning] = []
        read_failures: List[str] = []
        for key, generation, result, failure in outcomes:
            if failure is not None:
                logger.warning("Keeping previous records for %s: %s", key, failure)
                read_failures.append(key)
                continue
            entries[key] = (generation, result.records)
            warnings.extend(result.warnings)

        self.repo.replace_all(entries, since=since, keep=read_failures)
        snapshot = self.repo.snapshot()
        self.indexer.rebuild(snapshot)
        output = self.aggregator.render(snapshot)
        record_count = sum(len(records) for _, records in snapshot)
        logger.info(
            "Full rescan indexed %d documents (%d records, %d warnings, %d read failures)",
            len(snapshot),
            record_count,
            len(warnings),
            len(read_failures),
        )
        published = self._publish(output) if publish else False
        return RescanResult(
            output=output,
            documents=len(snapshot),
            records=record_count,
            warnings=warnings,
            read_failures=read_failures,
            published=published,
        )

    def on_document_changed(self, key: str, text: Optional[str] = None, generation: Optional[int] = None) -> UpdateResult:
        """
        Re-parse one document and upsert its records. The generation is taken
        when the notification arrives, so a slower parse of older content can
        never overwrite newer content. Raises ReadFailure if `text` is omitted
        and the source cannot read the document.
        """
        if generation is None:
            generation = self.repo.reserve_generation(key)
        if text is None:
            if self.source is None:
                raise ValueError(f"No text given for {key} and no document source configured")
            text = self.source.read(key)

        result = self.engine.parse(key, text)
        accepted = self.repo.upsert(key, result.records, generation=generation)
        update = UpdateResult(key=key, generation=generation, accepted=accepted, warnings=list(result.warnings))
        if not accepted:
            logger.info("Ignoring superseded change for %s (generation %d)", key, generation)
            return update

        self.indexer.index_document(key, result.records)
        for warning in result.warnings:
            logger.debug("Parse warning: %s", warning)
        if self.config.publish_on_change:
            update.published = self._publish(self.render())
        return update

    def on_document_deleted(self, key: str, generation: Optional[int] = None) -> UpdateResult:
        if generation is None:
            generation = self.repo.reserve_generation(key)
        accepted = self.repo.remove(key, generation=generation)
        update = UpdateResult(key=key, generation=generation, accepted=accepted)
        if not accepted:
            logger.info("Ignoring superseded deletion for %s (generation %d)", key, generation)
            return update

        self.indexer.delete_document(key)
        if self.config.publish_on_change:
            update.published = self._publish(self.render())
        return update

    def render(self) -> str:
        try:
            snapshot = self.repo.snapshot()
        except InvariantViolation:
            if self.config.strict or self.source is None:
                raise
            logger.exception("Index is inconsistent; rebuilding it with a full rescan")
            self.initialize()
            return self.full_rescan(publish=False).output
        return self.aggregator.render(snapshot)

    def publish(self) -> str:
        output = self.render()
        self._publish(output)
        return output

    def status(self, key: str) -> DocumentStatus:
        if self.repo.get_records(key) is None:
            return DocumentStatus.UNINDEXED
        return DocumentStatus.INDEXED

    def _load_and_parse(self, key: str, text: Optional[str]) -> _Outcome:
        generation = self.repo.reserve_generation(key)
        if text is None:
            try:
                text = self.source.read(key)
            except ReadFailure as exc:
                return key, generation, None, exc
        return key, generation, self.engine.parse(key, text), None

    def _publish(self, output: str) -> bool:
        if self.sink is None:
            return False
        try:
            self.sink.publish(output)
        except PublishFailure:
            logger.error("Publishing the aggregated output failed; previous output left in place")
            raise
        return True
