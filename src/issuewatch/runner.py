from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterator

from .models import CycleResult, Query, Record, RecordState, Source, StateKey, utc_now
from .notify.base import Notifier
from .rules.detector import ChangeDetector
from .sources.base import QueryExecutor
from .state.store import StateStore


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _QueryReport:
    records_fetched: int = 0
    change_count: int = 0
    persist_failures: int = 0
    notify_failures: int = 0
    error: str | None = None


@dataclass(slots=True)
class CycleRunner:
    """
    核心执行器：负责单个 Source 一轮轮询的完整数据流闭环：
    Query Executor -> State(lookup) -> ChangeDetector -> State(upsert) -> Notify -> State(mark notified)

    顺序约束：先落库、再通知、最后标记已通知。
    - 落库失败：本轮不通知该记录（没有持久记录就不通知）
    - 通知后、标记前中断：下一轮因 last_notified_at 为空而补发一次，宁可重复不可丢失

    同一个 Source 的两轮轮询（定时触发与 poll_now 撞车）通过 per-source 锁串行执行；
    不同 Source 互不等待。
    """

    state: StateStore
    executor: QueryExecutor
    notifiers: tuple[Notifier, ...] = ()
    detector: ChangeDetector = field(default_factory=ChangeDetector)
    clock: Callable[[], datetime] = utc_now
    _locks: dict[str, threading.RLock] = field(default_factory=dict, init=False, repr=False)
    _locks_guard: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def _source_lock(self, source_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(source_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[source_id] = lock
            return lock

    @contextmanager
    def exclusive(self, source_id: str) -> Iterator[None]:
        """
        持有某个 Source 的轮询锁：进行中的一轮会先跑完，期间不会开始新的一轮。

        可重入，调用方可以在持锁期间再调用 run_cycle。
        """
        with self._source_lock(source_id):
            yield

    def discard(self, source_id: str) -> None:
        """
        Source 被删除后丢弃它的锁。
        """
        with self._locks_guard:
            self._locks.pop(source_id, None)

    def run_cycle(self, source: Source) -> CycleResult:
        """
        执行一个 Source 的一轮轮询：逐个执行启用的 query。

        单个 query 的失败只影响该 query，本轮 error 取最后一个失败。
        """
        with self._source_lock(source.source_id):
            return self._run_cycle_locked(source)

    def _run_cycle_locked(self, source: Source) -> CycleResult:
        start_t = time.monotonic()
        queries = source.enabled_queries()

        change_count = 0
        records_fetched = 0
        query_errors = 0
        persist_failures = 0
        notify_failures = 0
        error: str | None = None

        for query in queries:
            report = self._run_query(source, query)
            change_count += report.change_count
            records_fetched += report.records_fetched
            persist_failures += report.persist_failures
            notify_failures += report.notify_failures
            if report.error is not None:
                query_errors += 1
                error = report.error

        result = CycleResult(
            source_id=source.source_id,
            change_count=change_count,
            error=error,
            queries_polled=len(queries),
            query_errors=query_errors,
            records_fetched=records_fetched,
            persist_failures=persist_failures,
            notify_failures=notify_failures,
            duration_ms=int((time.monotonic() - start_t) * 1000),
        )
        logger.info(
            "cycle done: source=%s queries=%d fetched=%d changes=%d query_errors=%d persist_failures=%d notify_failures=%d duration_ms=%d",
            source.name,
            result.queries_polled,
            result.records_fetched,
            result.change_count,
            result.query_errors,
            result.persist_failures,
            result.notify_failures,
            result.duration_ms,
        )
        return result

    def _run_query(self, source: Source, query: Query) -> _QueryReport:
        report = _QueryReport()
        try:
            records = list(self.executor.search(source, query.expression))
        except Exception as e:  # noqa: BLE001
            report.error = f"Error polling {source.name} / {query.name}: {type(e).__name__}: {e}"
            logger.exception(
                "query failed: source=%s source_id=%s query=%s query_id=%s",
                source.name,
                source.source_id,
                query.name,
                query.query_id,
            )
            return report

        report.records_fetched = len(records)
        for record in records:
            self._process_record(record, source, query, report)
        return report

    def _process_record(self, record: Record, source: Source, query: Query, report: _QueryReport) -> None:
        key = StateKey(record_id=record.record_id, source_id=source.source_id, query_id=query.query_id)

        try:
            previous = self.state.get_state(key)
            verdict = self.detector.decide(record, previous)
            self.state.upsert_state(
                RecordState(
                    record_id=record.record_id,
                    key=record.key,
                    source_id=source.source_id,
                    query_id=query.query_id,
                    summary=record.summary,
                    status=record.status,
                    updated_at=record.updated_at,
                    last_notified_at=previous.last_notified_at if previous else None,
                    is_read=previous.is_read if previous else False,
                )
            )
        except Exception as e:  # noqa: BLE001
            report.persist_failures += 1
            report.error = f"Error saving {record.key} for {source.name} / {query.name}: {type(e).__name__}: {e}"
            logger.exception(
                "persist failed, notification skipped: source=%s query=%s key=%s record_id=%s",
                source.name,
                query.name,
                record.key,
                record.record_id,
            )
            return

        if not verdict.should_notify:
            return

        logger.debug(
            "change detected: verdict=%s source=%s query=%s key=%s updated_at=%s",
            verdict.value,
            source.name,
            query.name,
            record.key,
            record.updated_at.isoformat(),
        )
        report.notify_failures += self._notify(record, key, source, query)

        try:
            self.state.mark_notified(key, self.clock())
        except Exception as e:  # noqa: BLE001
            report.persist_failures += 1
            report.error = f"Error marking {record.key} notified: {type(e).__name__}: {e}"
            logger.exception(
                "mark notified failed: source=%s query=%s key=%s",
                source.name,
                query.name,
                record.key,
            )
        report.change_count += 1

    def _notify(self, record: Record, key: StateKey, source: Source, query: Query) -> int:
        failures = 0
        for notifier in self.notifiers:
            channel = notifier.channel()
            try:
                notifier.notify(record, source.name, query.name)
            except Exception as e:  # noqa: BLE001
                failures += 1
                logger.exception(
                    "notify failed: channel=%s notifier_type=%s source=%s query=%s key=%s url=%s",
                    channel,
                    type(notifier).__name__,
                    source.name,
                    query.name,
                    record.key,
                    record.url,
                )
                try:
                    self.state.record_notify_failure(key=key, channel=channel, error=f"{type(e).__name__}: {e}")
                except Exception:  # noqa: BLE001
                    logger.exception("record notify failure failed: channel=%s key=%s", channel, record.key)
        return failures
