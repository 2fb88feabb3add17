import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date, timedelta

import pytest

from note_tasks.indexing import (
    DocumentStatus,
    IndexerConfig,
    IndexingWorker,
    InMemoryRecordRepository,
    InvariantViolation,
    LocalVaultStorage,
    PublishFailure,
    ReadFailure,
    RecordKind,
    SessionRecord,
    SqlAlchemyRecordRepository,
    TaskRecord,
    VaultPaths,
    WhooshIndexer,
    parse,
    render,
)
from note_tasks.indexing import repository as repository_module
from note_tasks.indexing import storage as storage_module
from note_tasks.indexing.repository import DocumentModel


def task(key, line, text, completed=False, **extra):
    return TaskRecord(
        document_key=key,
        line_number=line,
        offset=0,
        raw_text=f"- [{'x' if completed else ' '}] {text}",
        text=text,
        completed=completed,
        **extra,
    )


def session(key, line, minutes, text=""):
    return SessionRecord(
        document_key=key,
        line_number=line,
        offset=0,
        raw_text=f"#session {minutes}m {text}",
        text=text,
        duration=timedelta(minutes=minutes),
    )


class DictSource:
    def __init__(self, documents):
        self.documents = dict(documents)
        self.unreadable = set()

    def list_keys(self):
        return sorted(self.documents)

    def read(self, key):
        if key in self.unreadable or key not in self.documents:
            raise ReadFailure(key, "unavailable")
        return self.documents[key]


class RecordingSink:
    def __init__(self, fail=False):
        self.published = []
        self.fail = fail

    def publish(self, text):
        if self.fail:
            raise PublishFailure("memory", "disk full")
        self.published.append(text)


@pytest.fixture(params=["memory", "sqlalchemy"])
def repo(request, tmp_path):
    if request.param == "memory":
        return InMemoryRecordRepository()
    return SqlAlchemyRecordRepository(f"sqlite+pysqlite:///{tmp_path / 'index.db'}")


# region repository


def test_snapshot_is_ordered_by_key(repo):
    repo.upsert("b.md", [task("b.md", 1, "b")])
    repo.upsert("a.md", [task("a.md", 1, "a"), session("a.md", 2, 25, "focus")])

    snapshot = repo.snapshot()
    assert [key for key, _ in snapshot] == ["a.md", "b.md"]
    assert [r.kind for r in snapshot[0][1]] == [RecordKind.TASK, RecordKind.SESSION]


def test_upsert_is_idempotent(repo):
    records = [task("a.md", 1, "a")]
    repo.upsert("a.md", records)
    once = repo.snapshot()
    repo.upsert("a.md", records)

    assert repo.snapshot() == once


def test_upsert_replaces_whole_list(repo):
    repo.upsert("a.md", [task("a.md", 1, "a"), task("a.md", 2, "b")])
    repo.upsert("a.md", [task("a.md", 1, "c")])

    assert [r.text for r in repo.get_records("a.md")] == ["c"]


@pytest.mark.parametrize("newer_first", [True, False])
def test_newest_generation_wins_in_either_order(repo, newer_first):
    g1 = repo.reserve_generation("a.md")
    g2 = repo.reserve_generation("a.md")
    old = [task("a.md", 1, "old")]
    new = [task("a.md", 1, "new")]

    if newer_first:
        assert repo.upsert("a.md", new, generation=g2)
        assert not repo.upsert("a.md", old, generation=g1)
    else:
        assert repo.upsert("a.md", old, generation=g1)
        assert repo.upsert("a.md", new, generation=g2)

    assert [r.text for r in repo.get_records("a.md")] == ["new"]
    assert repo.current_generation("a.md") == g2


def test_stale_upsert_cannot_resurrect_removed_key(repo):
    g1 = repo.reserve_generation("a.md")
    repo.upsert("a.md", [task("a.md", 1, "a")])
    g_delete = repo.reserve_generation("a.md")
    assert repo.remove("a.md", generation=g_delete)

    assert not repo.upsert("a.md", [task("a.md", 1, "stale")], generation=g1)
    assert repo.get_records("a.md") is None
    assert all(key != "a.md" for key, _ in repo.snapshot())

    assert repo.upsert("a.md", [task("a.md", 1, "recreated")])
    assert [r.text for r in repo.get_records("a.md")] == ["recreated"]


def test_replace_all_drops_missing_keys_but_honours_keep_and_newer_writes(repo):
    repo.upsert("gone.md", [task("gone.md", 1, "gone")])
    repo.upsert("kept.md", [task("kept.md", 1, "kept")])
    since = repo.reserve_generation()
    repo.upsert("fresh.md", [task("fresh.md", 1, "fresh")])
    g = repo.reserve_generation("a.md")

    repo.replace_all({"a.md": (g, [task("a.md", 1, "a")])}, since=since, keep=["kept.md"])

    assert [key for key, _ in repo.snapshot()] == ["a.md", "fresh.md", "kept.md"]


def test_replace_all_keeps_newer_change_for_same_key(repo):
    rescan_generation = repo.reserve_generation("a.md")
    repo.upsert("a.md", [task("a.md", 1, "edited during rescan")])

    repo.replace_all({"a.md": (rescan_generation, [task("a.md", 1, "rescanned")])})

    assert [r.text for r in repo.get_records("a.md")] == ["edited during rescan"]


def test_records_must_belong_to_key(repo):
    with pytest.raises(ValueError):
        repo.upsert("a.md", [task("b.md", 1, "b")])


def test_clear_empties_the_store(repo):
    repo.upsert("a.md", [task("a.md", 1, "a")])
    repo.clear()

    assert repo.snapshot() == []
    assert repo.list_documents() == []


def test_rescan_keeps_change_committed_while_it_was_swapping(repo, monkeypatch):
    rescan_generation = repo.reserve_generation("a.md")
    check_owner = repository_module._check_owner
    interleaved = []

    def check_and_interleave(key, records):
        if not interleaved:
            interleaved.append(key)
            writer = threading.Thread(target=repo.upsert, args=("a.md", [task("a.md", 1, "edited during rescan")]))
            writer.start()
            writer.join()
        return check_owner(key, records)

    monkeypatch.setattr(repository_module, "_check_owner", check_and_interleave)
    repo.replace_all({"a.md": (rescan_generation, [task("a.md", 1, "rescanned")])})

    assert interleaved == ["a.md"]
    assert [r.text for r in repo.get_records("a.md")] == ["edited during rescan"]
    assert repo.current_generation("a.md") > rescan_generation


def test_sql_repositories_sharing_a_database_share_generations(tmp_path):
    db_url = f"sqlite+pysqlite:///{tmp_path / 'index.db'}"
    api_side = SqlAlchemyRecordRepository(db_url)
    job_side = SqlAlchemyRecordRepository(db_url)

    with ThreadPoolExecutor(max_workers=4) as pool:
        futures = [pool.submit((api_side if i % 2 else job_side).reserve_generation) for i in range(40)]
        reserved = [f.result() for f in futures]
    assert len(set(reserved)) == 40

    older = api_side.reserve_generation("a.md")
    newer = job_side.reserve_generation("a.md")
    assert job_side.upsert("a.md", [task("a.md", 1, "new")], generation=newer)
    assert not api_side.upsert("a.md", [task("a.md", 1, "old")], generation=older)
    assert not api_side.remove("a.md", generation=older)
    assert [r.text for r in api_side.get_records("a.md")] == ["new"]


def test_sqlalchemy_repository_roundtrip(tmp_path):
    db_url = f"sqlite+pysqlite:///{tmp_path / 'index.db'}"
    repo = SqlAlchemyRecordRepository(db_url)
    records = [
        task(
            "a.md",
            1,
            "ship #work",
            tags=("work",),
            due=date(2024, 5, 1),
            start=date(2024, 4, 1),
            estimate=timedelta(minutes=90),
            repeat=timedelta(days=7),
            repeat_from_completion=True,
        ),
        task("a.md", 2, "sub step", parent_line=1),
        session("a.md", 3, 25, "focus"),
    ]
    repo.upsert("a.md", records)

    reopened = SqlAlchemyRecordRepository(db_url)
    assert reopened.get_records("a.md") == records
    assert [(d.key, d.record_count) for d in reopened.list_documents()] == [("a.md", 3)]
    assert reopened.reserve_generation() > reopened.current_generation("a.md")


def test_missing_generation_is_an_invariant_violation(tmp_path):
    memory = InMemoryRecordRepository()
    memory._entries["bad.md"] = (None, ())
    with pytest.raises(InvariantViolation):
        memory.snapshot()

    sql = SqlAlchemyRecordRepository(f"sqlite+pysqlite:///{tmp_path / 'index.db'}")
    with sql.SessionLocal() as db:
        db.add(DocumentModel(key="bad.md", generation=None, deleted=False, record_count=0))
        db.commit()
    with pytest.raises(InvariantViolation):
        sql.snapshot()


# endregion

# region aggregator


def test_render_layout_and_ordering():
    snapshot = [
        ("A", [task("A", 1, "a")]),
        ("B", [task("B", 1, "b", completed=True)]),
    ]

    assert render(snapshot) == (
        "# Tasks\n"
        "\n"
        "## A\n"
        "\n"
        "- [ ] a (A:1)\n"
        "\n"
        "## B\n"
        "\n"
        "- [x] b (B:1)\n"
        "\n"
        "# Sessions\n"
        "\n"
        "_None._\n"
        "\n"
        "# Summary\n"
        "\n"
        "- Open tasks: 1\n"
        "- Completed tasks: 1\n"
        "- Sessions: 0\n"
        "- Focus time: 0m\n"
    )


def test_render_is_idempotent_and_keeps_every_record():
    result = parse("log.md", "- [ ] plan 📅 2024-05-01\n#session 25m focus\n- [x] review #session 1h 5m")
    snapshot = [("log.md", result.records)]

    first = render(snapshot)
    assert render(snapshot) == first
    item_lines = [line for line in first.splitlines() if line.startswith("- ") and "(log.md:" in line]
    assert len(item_lines) == len(result.records) == 4
    assert "- [ ] plan 📅 2024-05-01 (log.md:1)" in first
    assert "- 1h 5m review (log.md:3)" in first
    assert "- Focus time: 1h 30m" in first


def test_render_sorts_by_line_and_respects_kind_order():
    snapshot = [("a.md", [session("a.md", 5, 10, "late"), task("a.md", 3, "second"), task("a.md", 1, "first")])]
    output = render(snapshot, IndexerConfig(kind_order=(RecordKind.SESSION, RecordKind.TASK), include_summary=False))

    assert output.index("# Sessions") < output.index("# Tasks")
    assert output.index("first (a.md:1)") < output.index("second (a.md:3)")
    assert "# Summary" not in output


def test_render_indents_sub_tasks_and_marks_relative_repeats():
    result = parse(
        "plan.md",
        "- [ ] launch\n  - [ ] write copy 🔁 every 1 week after completed\n    - [x] proofread\n- [ ] retro",
    )
    output = render([("plan.md", result.records)], IndexerConfig(include_summary=False))

    assert output == (
        "# Tasks\n"
        "\n"
        "## plan.md\n"
        "\n"
        "- [ ] launch (plan.md:1)\n"
        "  - [ ] write copy 🔁 every 7d after completed (plan.md:2)\n"
        "    - [x] proofread (plan.md:3)\n"
        "- [ ] retro (plan.md:4)\n"
        "\n"
        "# Sessions\n"
        "\n"
        "_None._\n"
    )


def test_focus_time_beyond_timedelta_range_still_renders():
    long_haul = [
        SessionRecord(
            document_key="log.md",
            line_number=line,
            offset=0,
            raw_text="",
            text="",
            duration=timedelta(days=999999990),
        )
        for line in (1, 2)
    ]

    output = render([("log.md", long_haul)])
    assert "- 999999990d (log.md:1)" in output
    assert "- Focus time: 1999999980d" in output


def test_kind_order_must_cover_every_kind():
    with pytest.raises(ValueError):
        IndexerConfig(kind_order=(RecordKind.TASK,))


# endregion

# region worker


def test_full_rescan_renders_both_documents():
    sink = RecordingSink()
    worker = IndexingWorker(repository=InMemoryRecordRepository(), sink=sink)
    result = worker.full_rescan([("A", "- [ ] a"), ("B", "- [x] b")])

    assert result.documents == 2 and result.records == 2
    assert result.published and sink.published == [result.output]
    assert result.output.index("- [ ] a (A:1)") < result.output.index("- [x] b (B:1)")


def test_rescan_from_source_drops_deleted_documents_and_keeps_unreadable_ones():
    source = DictSource({"a.md": "- [ ] a", "b.md": "- [ ] b", "c.md": "- [ ] c"})
    worker = IndexingWorker(repository=InMemoryRecordRepository(), source=source)
    worker.full_rescan()

    del source.documents["c.md"]
    source.documents["a.md"] = "- [x] a changed"
    source.unreadable.add("a.md")
    result = worker.full_rescan()

    assert result.read_failures == ["a.md"]
    assert [r.text for r in worker.repo.get_records("a.md")] == ["a"]
    assert worker.repo.get_records("c.md") is None
    assert "(c.md:1)" not in result.output


def test_read_failure_is_logged(caplog):
    source = DictSource({"a.md": "- [ ] a"})
    source.unreadable.add("a.md")
    worker = IndexingWorker(repository=InMemoryRecordRepository(), source=source)

    with caplog.at_level(logging.WARNING, logger="note_tasks.indexing.worker"):
        worker.full_rescan()
    assert "a.md" in caplog.text


def test_warnings_in_one_document_do_not_block_others():
    worker = IndexingWorker(repository=InMemoryRecordRepository())
    result = worker.full_rescan([("bad.md", "- [ broken"), ("good.md", "- [ ] fine")])

    assert [(w.document_key, w.line_number) for w in result.warnings] == [("bad.md", 1)]
    assert "- [ ] fine (good.md:1)" in result.output


@pytest.mark.parametrize("newer_first", [True, False])
def test_document_changes_resolve_by_generation(newer_first):
    worker = IndexingWorker(repository=InMemoryRecordRepository())
    g1 = worker.repo.reserve_generation("a.md")
    g2 = worker.repo.reserve_generation("a.md")
    calls = [("- [ ] first", g1), ("- [ ] second", g2)]
    if newer_first:
        calls.reverse()

    for text, generation in calls:
        worker.on_document_changed("a.md", text, generation=generation)

    assert [r.text for r in worker.repo.get_records("a.md")] == ["second"]


def test_change_reads_from_source_when_text_is_omitted():
    source = DictSource({"a.md": "#session 25m deep work"})
    worker = IndexingWorker(repository=InMemoryRecordRepository(), source=source)

    update = worker.on_document_changed("a.md")
    assert update.accepted
    assert worker.repo.get_records("a.md")[0].duration == timedelta(minutes=25)

    with pytest.raises(ReadFailure):
        worker.on_document_changed("missing.md")


def test_deletion_removes_records_from_render():
    worker = IndexingWorker(repository=InMemoryRecordRepository())
    worker.full_rescan([("A", "- [ ] a"), ("B", "- [x] b")])

    worker.on_document_deleted("A")

    output = worker.render()
    assert "(A:" not in output
    assert "(B:1)" in output
    assert worker.status("A") == DocumentStatus.UNINDEXED


def test_incremental_updates_publish_only_when_configured():
    sink = RecordingSink()
    worker = IndexingWorker(repository=InMemoryRecordRepository(), sink=sink)
    worker.full_rescan([("A", "- [ ] a")])
    worker.on_document_changed("A", "- [x] a")
    assert len(sink.published) == 1

    eager = IndexingWorker(
        repository=InMemoryRecordRepository(), sink=sink, config=IndexerConfig(publish_on_change=True)
    )
    eager.on_document_changed("A", "- [x] a")
    eager.on_document_deleted("A")
    assert len(sink.published) == 3
    assert "- [x] a (A:1)" in sink.published[1]
    assert "(A:1)" not in sink.published[2]


def test_publish_failure_is_raised_after_index_is_rebuilt():
    worker = IndexingWorker(repository=InMemoryRecordRepository(), sink=RecordingSink(fail=True))

    with pytest.raises(PublishFailure):
        worker.full_rescan([("A", "- [ ] a")])
    assert worker.status("A") == DocumentStatus.INDEXED


def test_invariant_violation_strict_raises_otherwise_rebuilds():
    source = DictSource({"a.md": "- [ ] a"})
    strict = IndexingWorker(repository=InMemoryRecordRepository(), source=source, config=IndexerConfig(strict=True))
    strict.full_rescan()
    strict.repo._entries["a.md"] = (None, ())
    with pytest.raises(InvariantViolation):
        strict.render()

    lenient = IndexingWorker(repository=InMemoryRecordRepository(), source=source)
    lenient.full_rescan()
    lenient.repo._entries["a.md"] = (None, ())
    assert "- [ ] a (a.md:1)" in lenient.render()


def test_unparseable_duration_does_not_abort_rescan():
    worker = IndexingWorker(repository=InMemoryRecordRepository())
    result = worker.full_rescan([("bad.md", "#session 99999999999h"), ("good.md", "- [ ] fine")])

    assert result.documents == 2
    assert [(w.document_key, w.line_number) for w in result.warnings] == [("bad.md", 1)]
    assert "- [ ] fine (good.md:1)" in result.output


def test_recovering_render_does_not_publish():
    sink = RecordingSink()
    worker = IndexingWorker(
        repository=InMemoryRecordRepository(), source=DictSource({"a.md": "- [ ] a"}), sink=sink
    )
    worker.full_rescan()
    assert len(sink.published) == 1

    worker.repo._entries["a.md"] = (None, ())
    assert "- [ ] a (a.md:1)" in worker.render()
    assert len(sink.published) == 1

    worker.repo._entries["a.md"] = (None, ())
    worker.publish()
    assert len(sink.published) == 2


def test_initialize_discards_previous_state():
    worker = IndexingWorker(repository=InMemoryRecordRepository())
    worker.on_document_changed("a.md", "- [ ] a")
    assert worker.status("a.md") == DocumentStatus.INDEXED

    worker.initialize()
    assert worker.status("a.md") == DocumentStatus.UNINDEXED
    assert worker.repo.snapshot() == []


def test_worker_with_sqlalchemy_repository(tmp_path):
    repo = SqlAlchemyRecordRepository(f"sqlite+pysqlite:///{tmp_path / 'index.db'}")
    worker = IndexingWorker(repository=repo)
    worker.full_rescan([("A", "- [ ] a"), ("B", "#session 30m reading")])
    worker.on_document_changed("A", "- [x] a")

    output = worker.render()
    assert "- [x] a (A:1)" in output
    assert "- 30m reading (B:1)" in output


# endregion

# region storage and search


def test_vault_storage_lists_and_reads_documents(tmp_path):
    (tmp_path / "notes").mkdir()
    (tmp_path / ".obsidian").mkdir()
    (tmp_path / "notes" / "today.md").write_text("- [ ] a", encoding="utf-8")
    (tmp_path / "inbox.md").write_text("- [x] b", encoding="utf-8")
    (tmp_path / ".obsidian" / "hidden.md").write_text("- [ ] hidden", encoding="utf-8")
    (tmp_path / "output.md").write_text("old output", encoding="utf-8")
    (tmp_path / "image.png").write_bytes(b"\x89PNG")

    storage = LocalVaultStorage(VaultPaths(tmp_path))
    assert storage.list_keys() == ["inbox.md", "notes/today.md"]
    assert storage.read("notes/today.md") == "- [ ] a"
    with pytest.raises(ReadFailure):
        storage.read("missing.md")
    with pytest.raises(ReadFailure):
        storage.read("../outside.md")


def test_publish_replaces_output_without_leftovers(tmp_path):
    storage = LocalVaultStorage(VaultPaths(tmp_path))
    storage.publish("first\n")
    storage.publish("second\n")

    assert storage.read_output() == "second\n"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["output.md"]


def test_failed_publish_leaves_previous_output(tmp_path, monkeypatch):
    storage = LocalVaultStorage(VaultPaths(tmp_path))
    storage.publish("good\n")

    def broken_replace(src, dst):
        raise OSError("rename failed")

    monkeypatch.setattr(storage_module.os, "replace", broken_replace)
    with pytest.raises(PublishFailure):
        storage.publish("bad\n")
    monkeypatch.undo()

    assert storage.read_output() == "good\n"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["output.md"]


def test_rescan_publishes_into_vault(tmp_path):
    (tmp_path / "a.md").write_text("- [ ] a\n#session 25m a", encoding="utf-8")
    storage = LocalVaultStorage(VaultPaths(tmp_path, output_name="tasks.md"))
    worker = IndexingWorker(repository=InMemoryRecordRepository(), source=storage, sink=storage)

    result = worker.full_rescan()
    assert storage.read_output() == result.output

    again = worker.full_rescan()
    assert again.documents == 1
    assert again.output == result.output


def test_whoosh_indexer(tmp_path):
    indexer = WhooshIndexer(tmp_path / "whoosh")
    indexer.index_document("a.md", [task("a.md", 1, "write quarterly report"), session("a.md", 2, 25, "report review")])
    indexer.index_document("b.md", [task("b.md", 1, "buy groceries")])

    hits = indexer.search("report")
    assert {(h["document_key"], h["kind"]) for h in hits} == {("a.md", "task"), ("a.md", "session")}
    assert [h["line_number"] for h in indexer.search("report", kind=RecordKind.SESSION)] == [2]

    indexer.delete_document("a.md")
    assert indexer.search("report") == []
    assert len(indexer.search("groceries")) == 1


def test_worker_keeps_search_index_in_sync(tmp_path):
    indexer = WhooshIndexer(tmp_path / "whoosh")
    worker = IndexingWorker(repository=InMemoryRecordRepository(), indexer=indexer)
    worker.full_rescan([("a.md", "- [ ] call the plumber")])
    assert len(indexer.search("plumber")) == 1

    worker.on_document_changed("a.md", "- [ ] call the electrician")
    assert indexer.search("plumber") == []
    assert len(indexer.search("electrician")) == 1

    worker.on_document_deleted("a.md")
    assert indexer.search("electrician") == []


def test_concurrent_changes_all_reach_search_index(tmp_path):
    indexer = WhooshIndexer(tmp_path / "whoosh")
    worker = IndexingWorker(repository=InMemoryRecordRepository(), indexer=indexer)

    with ThreadPoolExecutor(max_workers=8) as pool:
        futures = [
            pool.submit(worker.on_document_changed, f"doc{i}.md", f"- [ ] errand {i} groceries") for i in range(16)
        ]
        updates = [future.result() for future in futures]

    assert all(update.accepted for update in updates)
    hits = indexer.search("groceries", limit=50)
    assert sorted(hit["document_key"] for hit in hits) == sorted(f"doc{i}.md" for i in range(16))


# endregion
