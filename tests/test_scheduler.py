import threading
import time
from dataclasses import dataclass, field

from issuewatch.models import Query, Record, Source
from issuewatch.registry import SourceRegistry
from issuewatch.runner import CycleRunner
from issuewatch.scheduler import PollScheduler
from issuewatch.service import PollingService
from issuewatch.state.sqlite_store import SqliteStateStore


UNIT = 0.02


def _wait_until(predicate, timeout: float = 3.0) -> bool:  # noqa: ANN001
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


def _source(source_id: str, poll_interval: int, *, enabled: bool = True) -> Source:
    return Source(
        source_id=source_id,
        name=source_id,
        url="https://jira.example.com",
        poll_interval=poll_interval,
        enabled=enabled,
        queries=(Query(query_id=f"{source_id}-q", name="q", expression=source_id),),
    )


@dataclass
class _Recorder:
    calls: list[str] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def __call__(self, source: Source) -> None:
        with self.lock:
            self.calls.append(source.source_id)

    def count(self, source_id: str) -> int:
        with self.lock:
            return self.calls.count(source_id)


@dataclass
class _BlockingExecutor:
    """
    source "a" 的查询一直阻塞直到 release；其余 source 立即返回空集合并计数。
    """

    release: threading.Event = field(default_factory=threading.Event)
    counts: dict[str, int] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def search(self, source: Source, expression: str) -> list[Record]:  # noqa: ARG002
        with self.lock:
            self.counts[source.source_id] = self.counts.get(source.source_id, 0) + 1
        if source.source_id == "a":
            self.release.wait(5)
        return []

    def check_connection(self, source: Source) -> bool:  # noqa: ARG002
        return True

    def count(self, source_id: str) -> int:
        with self.lock:
            return self.counts.get(source_id, 0)


def test_start_fires_immediately_and_repeats() -> None:
    recorder = _Recorder()
    scheduler = PollScheduler(
        recorder,
        sources_provider=lambda: (_source("a", 1), _source("off", 1, enabled=False)),
        cadence_unit_seconds=UNIT,
    )
    try:
        scheduled = scheduler.start()
        assert [s.source_id for s in scheduled] == ["a"]
        assert _wait_until(lambda: recorder.count("a") >= 3)
        assert recorder.count("off") == 0
    finally:
        scheduler.stop()


def test_start_is_noop_when_running() -> None:
    recorder = _Recorder()
    scheduler = PollScheduler(recorder, sources_provider=lambda: (_source("a", 50),), cadence_unit_seconds=UNIT)
    try:
        scheduler.start()
        assert scheduler.start() == ()
        assert scheduler.scheduled_source_ids() == ("a",)
        assert _wait_until(lambda: recorder.count("a") == 1)
        time.sleep(0.05)
        assert recorder.count("a") == 1
    finally:
        scheduler.stop()


def test_stop_cancels_future_fires() -> None:
    recorder = _Recorder()
    scheduler = PollScheduler(recorder, sources_provider=lambda: (_source("a", 1),), cadence_unit_seconds=UNIT)
    scheduler.start()
    assert _wait_until(lambda: recorder.count("a") >= 2)
    scheduler.stop()
    assert not scheduler.is_running
    assert scheduler.scheduled_source_ids() == ()

    time.sleep(0.05)
    settled = recorder.count("a")
    time.sleep(0.1)
    assert recorder.count("a") == settled


def test_restart_rebuilds_from_current_sources() -> None:
    recorder = _Recorder()
    current = [(_source("a", 50),)]
    scheduler = PollScheduler(recorder, sources_provider=lambda: current[0], cadence_unit_seconds=UNIT)
    try:
        scheduler.start()
        current[0] = (_source("b", 50),)
        scheduler.restart()
        assert scheduler.scheduled_source_ids() == ("b",)
        assert _wait_until(lambda: recorder.count("b") == 1)
    finally:
        scheduler.stop()


def test_scheduled_callback_exception_does_not_kill_task() -> None:
    calls = []

    def _boom(source: Source) -> None:
        calls.append(source.source_id)
        raise RuntimeError("cycle exploded")

    scheduler = PollScheduler(_boom, sources_provider=lambda: (_source("a", 1),), cadence_unit_seconds=UNIT)
    try:
        scheduler.start()
        assert _wait_until(lambda: len(calls) >= 3)
    finally:
        scheduler.stop()


def test_hung_source_does_not_delay_other_source(tmp_path) -> None:  # noqa: ANN001
    """
    a（cadence 1）第一轮就卡住；b（cadence 5）仍按自己的节拍持续被轮询。
    """
    store = SqliteStateStore(str(tmp_path / "state.sqlite3"))
    store.ensure_schema()
    executor = _BlockingExecutor()
    service = PollingService(
        registry=SourceRegistry([_source("a", 1), _source("b", 5)]),
        state=store,
        runner=CycleRunner(state=store, executor=executor),
        cadence_unit_seconds=UNIT,
    )
    try:
        service.start()
        assert _wait_until(lambda: executor.count("b") >= 4)
        assert executor.count("a") == 1
        status_a = service.get_status("a")
        assert status_a is not None and status_a.is_polling
    finally:
        executor.release.set()
        service.stop()


def test_failing_source_does_not_skip_other_source(tmp_path) -> None:  # noqa: ANN001
    store = SqliteStateStore(str(tmp_path / "state.sqlite3"))
    store.ensure_schema()

    @dataclass
    class _Executor:
        counts: dict[str, int] = field(default_factory=dict)

        def search(self, source: Source, expression: str) -> list[Record]:  # noqa: ARG002
            self.counts[source.source_id] = self.counts.get(source.source_id, 0) + 1
            if source.source_id == "a":
                raise RuntimeError("a is down")
            return []

        def check_connection(self, source: Source) -> bool:  # noqa: ARG002
            return False

    executor = _Executor()
    service = PollingService(
        registry=SourceRegistry([_source("a", 1), _source("b", 5)]),
        state=store,
        runner=CycleRunner(state=store, executor=executor),
        cadence_unit_seconds=UNIT,
    )
    try:
        service.start()
        assert _wait_until(lambda: executor.counts.get("b", 0) >= 3)
        status_a = service.get_status("a")
        status_b = service.get_status("b")
        assert status_a is not None and status_a.last_error is not None
        assert status_b is not None and status_b.last_error is None
    finally:
        service.stop()
