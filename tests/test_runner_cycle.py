import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from issuewatch.models import Query, Record, RecordState, Source, StateKey
from issuewatch.runner import CycleRunner
from issuewatch.sources.base import QueryHttpError
from issuewatch.state.sqlite_store import SqliteStateStore


T1 = datetime(2026, 2, 10, 11, 0, tzinfo=UTC)


@dataclass
class FakeExecutor:
    """
    纯内存 Query Executor：按 expression 返回预设记录；值为异常时直接抛出。
    """

    results: dict[str, object]
    calls: list[tuple[str, str]] = field(default_factory=list)

    def search(self, source: Source, expression: str) -> list[Record]:
        self.calls.append((source.source_id, expression))
        value = self.results[expression]
        if isinstance(value, Exception):
            raise value
        return list(value)  # type: ignore[arg-type]

    def check_connection(self, source: Source) -> bool:  # noqa: ARG002
        return True


@dataclass
class FakeNotifier:
    sent: list[tuple[str, str, str]] = field(default_factory=list)

    def channel(self) -> str:
        return "fake"

    def notify(self, record: Record, source_name: str, query_name: str) -> None:
        self.sent.append((record.key, source_name, query_name))


@dataclass
class _FailingNotifier:
    def channel(self) -> str:
        return "fail"

    def notify(self, record: Record, source_name: str, query_name: str) -> None:  # noqa: ARG002
        raise RuntimeError("boom")


class _FlakyStore:
    """
    包装真实 SQLite 存储：对指定 record_id 的 upsert 抛出写入错误。
    """

    def __init__(self, inner: SqliteStateStore, fail_ids: set[str]) -> None:
        self.inner = inner
        self.fail_ids = fail_ids

    def __getattr__(self, name: str):  # noqa: ANN204
        return getattr(self.inner, name)

    def upsert_state(self, state: RecordState) -> None:
        if state.record_id in self.fail_ids:
            raise sqlite3.OperationalError("disk I/O error")
        self.inner.upsert_state(state)


def _record(record_id: str = "10001", *, updated_at: datetime = T1, summary: str = "Login broken") -> Record:
    return Record(
        record_id=record_id,
        key=f"ABC-{record_id[-1]}",
        summary=summary,
        status="Open",
        updated_at=updated_at,
        url=f"https://jira.example.com/browse/ABC-{record_id[-1]}",
    )


def _source(*queries: Query) -> Source:
    return Source(
        source_id="s1",
        name="Work",
        url="https://jira.example.com",
        poll_interval=5,
        queries=queries or (Query(query_id="q1", name="Mine", expression="jql-1"),),
    )


def _store(tmp_path) -> SqliteStateStore:  # noqa: ANN001
    store = SqliteStateStore(str(tmp_path / "state.sqlite3"))
    store.ensure_schema()
    return store


def test_new_record_notifies_once_and_is_persisted(tmp_path, clock) -> None:  # noqa: ANN001
    store = _store(tmp_path)
    notifier = FakeNotifier()
    runner = CycleRunner(
        state=store,
        executor=FakeExecutor(results={"jql-1": [_record()]}),
        notifiers=(notifier,),
        clock=clock,
    )

    result = runner.run_cycle(_source())

    assert result.change_count == 1
    assert result.error is None
    assert result.records_fetched == 1
    assert notifier.sent == [("ABC-1", "Work", "Mine")]
    state = store.get_state(StateKey("10001", "s1", "q1"))
    assert state is not None
    assert state.last_notified_at == clock.now
    assert state.summary == "Login broken"


def test_repoll_unchanged_set_is_idempotent(tmp_path, clock) -> None:  # noqa: ANN001
    store = _store(tmp_path)
    notifier = FakeNotifier()
    records = [_record("10001"), _record("10002")]
    runner = CycleRunner(
        state=store,
        executor=FakeExecutor(results={"jql-1": records}),
        notifiers=(notifier,),
        clock=clock,
    )

    runner.run_cycle(_source())
    before = {s.record_id: s.last_notified_at for s in store.list_states()}
    clock.advance(minutes=5)
    result = runner.run_cycle(_source())

    assert result.change_count == 0
    assert len(notifier.sent) == 2
    assert {s.record_id: s.last_notified_at for s in store.list_states()} == before


def test_unchanged_record_still_refreshes_display_fields(tmp_path, clock) -> None:  # noqa: ANN001
    store = _store(tmp_path)
    executor = FakeExecutor(results={"jql-1": [_record(summary="old title")]})
    runner = CycleRunner(state=store, executor=executor, notifiers=(FakeNotifier(),), clock=clock)
    runner.run_cycle(_source())
    notified_at = clock.now

    clock.advance(minutes=5)
    executor.results["jql-1"] = [_record(summary="new title")]
    result = runner.run_cycle(_source())

    state = store.get_state(StateKey("10001", "s1", "q1"))
    assert result.change_count == 0
    assert state is not None
    assert state.summary == "new title"
    assert state.last_notified_at == notified_at


def test_change_detection_is_strictly_after_last_notification(tmp_path, clock) -> None:  # noqa: ANN001
    store = _store(tmp_path)
    t0 = clock.now
    store.upsert_state(
        RecordState(
            record_id="10001",
            key="ABC-1",
            source_id="s1",
            query_id="q1",
            summary="s",
            status="Open",
            updated_at=t0 - timedelta(hours=1),
            last_notified_at=t0,
        )
    )
    notifier = FakeNotifier()
    executor = FakeExecutor(results={"jql-1": [_record(updated_at=t0)]})
    runner = CycleRunner(state=store, executor=executor, notifiers=(notifier,), clock=clock)

    assert runner.run_cycle(_source()).change_count == 0
    executor.results["jql-1"] = [_record(updated_at=t0 - timedelta(seconds=1))]
    assert runner.run_cycle(_source()).change_count == 0
    assert notifier.sent == []

    clock.advance(minutes=10)
    executor.results["jql-1"] = [_record(updated_at=t0 + timedelta(seconds=1))]
    assert runner.run_cycle(_source()).change_count == 1
    assert len(notifier.sent) == 1
    state = store.get_state(StateKey("10001", "s1", "q1"))
    assert state is not None
    assert state.last_notified_at == clock.now


def test_pending_notification_is_sent_on_next_cycle(tmp_path, clock) -> None:  # noqa: ANN001
    """
    模拟“落库后、通知前进程退出”：行存在但 last_notified_at 为空，下一轮必须补发。
    """
    store = _store(tmp_path)
    store.upsert_state(
        RecordState(
            record_id="10001",
            key="ABC-1",
            source_id="s1",
            query_id="q1",
            summary="Login broken",
            status="Open",
            updated_at=T1,
            last_notified_at=None,
        )
    )
    notifier = FakeNotifier()
    runner = CycleRunner(
        state=store,
        executor=FakeExecutor(results={"jql-1": [_record()]}),
        notifiers=(notifier,),
        clock=clock,
    )

    result = runner.run_cycle(_source())

    assert result.change_count == 1
    assert notifier.sent == [("ABC-1", "Work", "Mine")]
    state = store.get_state(StateKey("10001", "s1", "q1"))
    assert state is not None
    assert state.last_notified_at == clock.now


def test_s1_q1_scenario(tmp_path, clock) -> None:  # noqa: ANN001
    store = _store(tmp_path)
    notifier = FakeNotifier()
    executor = FakeExecutor(results={"jql-1": [_record(updated_at=T1)]})
    runner = CycleRunner(state=store, executor=executor, notifiers=(notifier,), clock=clock)
    key = StateKey("10001", "s1", "q1")

    assert runner.run_cycle(_source()).change_count == 1
    first = store.get_state(key)
    assert first is not None and first.last_notified_at == clock.now

    clock.advance(minutes=5)
    assert runner.run_cycle(_source()).change_count == 0

    t2 = clock.advance(minutes=5)
    executor.results["jql-1"] = [_record(updated_at=t2)]
    clock.advance(seconds=2)
    assert runner.run_cycle(_source()).change_count == 1
    third = store.get_state(key)
    assert third is not None and third.last_notified_at == clock.now
    assert len(notifier.sent) == 2

    assert store.delete_states_for_source("s1") == 1
    assert store.get_state(key) is None


def test_query_failure_does_not_abort_sibling_queries(tmp_path, clock, caplog) -> None:  # noqa: ANN001
    store = _store(tmp_path)
    notifier = FakeNotifier()
    source = _source(
        Query(query_id="q1", name="Broken", expression="bad"),
        Query(query_id="q2", name="Fine", expression="good"),
        Query(query_id="q3", name="Off", expression="disabled", enabled=False),
    )
    executor = FakeExecutor(results={"bad": QueryHttpError(400, "bad jql"), "good": [_record()]})
    runner = CycleRunner(state=store, executor=executor, notifiers=(notifier,), clock=clock)

    caplog.set_level(logging.ERROR)
    result = runner.run_cycle(source)

    assert [c[1] for c in executor.calls] == ["bad", "good"]
    assert result.queries_polled == 2
    assert result.query_errors == 1
    assert result.change_count == 1
    assert result.error is not None and "Broken" in result.error
    assert notifier.sent == [("ABC-1", "Work", "Fine")]
    assert "query failed" in caplog.text


def test_last_query_error_wins(tmp_path, clock) -> None:  # noqa: ANN001
    source = _source(
        Query(query_id="q1", name="First", expression="a"),
        Query(query_id="q2", name="Second", expression="b"),
    )
    executor = FakeExecutor(results={"a": RuntimeError("one"), "b": RuntimeError("two")})
    runner = CycleRunner(state=_store(tmp_path), executor=executor, clock=clock)

    result = runner.run_cycle(source)

    assert result.query_errors == 2
    assert result.error is not None and result.error.endswith("two")


def test_persist_failure_skips_notification(tmp_path, clock, caplog) -> None:  # noqa: ANN001
    inner = _store(tmp_path)
    store = _FlakyStore(inner, fail_ids={"10001"})
    notifier = FakeNotifier()
    runner = CycleRunner(
        state=store,  # type: ignore[arg-type]
        executor=FakeExecutor(results={"jql-1": [_record("10001"), _record("10002")]}),
        notifiers=(notifier,),
        clock=clock,
    )

    caplog.set_level(logging.ERROR)
    result = runner.run_cycle(_source())

    assert notifier.sent == [("ABC-2", "Work", "Mine")]
    assert result.change_count == 1
    assert result.persist_failures == 1
    assert result.error is not None and "ABC-1" in result.error
    assert inner.get_state(StateKey("10001", "s1", "q1")) is None
    assert "persist failed" in caplog.text


def test_notify_failure_is_recorded_and_row_still_marked(tmp_path, clock, caplog) -> None:  # noqa: ANN001
    db = tmp_path / "state.sqlite3"
    store = SqliteStateStore(str(db))
    store.ensure_schema()
    good = FakeNotifier()
    runner = CycleRunner(
        state=store,
        executor=FakeExecutor(results={"jql-1": [_record()]}),
        notifiers=(_FailingNotifier(), good),
        clock=clock,
    )

    caplog.set_level(logging.ERROR)
    result = runner.run_cycle(_source())

    assert result.notify_failures == 1
    assert result.change_count == 1
    assert result.error is None
    assert good.sent == [("ABC-1", "Work", "Mine")]
    assert "notify failed" in caplog.text

    state = store.get_state(StateKey("10001", "s1", "q1"))
    assert state is not None and state.last_notified_at == clock.now

    conn = sqlite3.connect(str(db))
    try:
        row = conn.execute("SELECT channel, error FROM notify_failures").fetchone()
    finally:
        conn.close()
    assert row == ("fail", "RuntimeError: boom")


@dataclass
class _GatedExecutor:
    """
    第一次 search 阻塞在 gate 上，用来制造同一 Source 两轮轮询的重叠。
    """

    records: list[Record]
    events: list[str]
    gate: threading.Event = field(default_factory=threading.Event)
    entered: threading.Event = field(default_factory=threading.Event)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def search(self, source: Source, expression: str) -> list[Record]:  # noqa: ARG002
        with self.lock:
            self.events.append("search")
            first = self.events.count("search") == 1
        self.entered.set()
        if first:
            self.gate.wait(5)
        return list(self.records)

    def check_connection(self, source: Source) -> bool:  # noqa: ARG002
        return True


@dataclass
class _RecordingNotifier:
    events: list[str]

    def channel(self) -> str:
        return "recording"

    def notify(self, record: Record, source_name: str, query_name: str) -> None:  # noqa: ARG002
        self.events.append(f"notify:{record.key}")


def test_overlapping_cycles_of_one_source_run_one_after_another(tmp_path, clock) -> None:  # noqa: ANN001
    events: list[str] = []
    executor = _GatedExecutor(records=[_record("10001")], events=events)
    runner = CycleRunner(
        state=_store(tmp_path),
        executor=executor,
        notifiers=(_RecordingNotifier(events),),
        clock=clock,
    )
    source = _source(Query(query_id="q1", name="Mine", expression="mine"))
    results = []

    threads = [threading.Thread(target=lambda: results.append(runner.run_cycle(source))) for _ in range(2)]
    for t in threads:
        t.start()
    assert executor.entered.wait(3)
    time.sleep(0.05)
    assert events == ["search"]

    executor.gate.set()
    for t in threads:
        t.join(5)

    assert events == ["search", "notify:ABC-1", "search"]
    assert sorted(r.change_count for r in results) == [0, 1]
