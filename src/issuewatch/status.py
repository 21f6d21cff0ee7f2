from __future__ import annotations

import dataclasses
import logging
import threading
from datetime import datetime, timedelta
from typing import Callable

from .models import CycleResult, PollStatus, Source, utc_now


logger = logging.getLogger(__name__)


StatusListener = Callable[[PollStatus], None]


class StatusAggregator:
    """
    每个 Source 的实时状态汇总（被动接收 scheduler/runner 的事件，供观察者读取）。

    - on_cycle_start：is_polling=True，记录 last_poll_time
    - on_cycle_end：is_polling=False，累加 change_count，设置/清空 last_error，
      调度仍在运行时按 cadence 推算 next_poll_time，否则置空
    - reset_change_count：只清零计数，不动 last_error 与时间戳

    锁只保护字典读写，不会跨越一次轮询，读状态不会被进行中的轮询阻塞。
    停止后才到达的轮询结果依然会被记录。
    """

    def __init__(
        self,
        *,
        cadence_unit_seconds: float = 60.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._cadence_unit_seconds = cadence_unit_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._statuses: dict[str, PollStatus] = {}
        self._running = False
        self._listeners: list[StatusListener] = []

    def cadence_delta(self, source: Source) -> timedelta:
        return timedelta(seconds=source.poll_interval * self._cadence_unit_seconds)

    def set_running(self, running: bool, sources: tuple[Source, ...] = ()) -> None:
        """
        调度启动/停止时调用：启动时为每个 Source 建立初始状态，停止时清空 next_poll_time。
        """
        changed: list[PollStatus] = []
        with self._lock:
            self._running = running
            if running:
                now = self._clock()
                for source in sources:
                    current = self._get_or_create(source)
                    updated = dataclasses.replace(
                        current,
                        source_name=source.name,
                        next_poll_time=now + self.cadence_delta(source),
                    )
                    self._statuses[source.source_id] = updated
                    changed.append(updated)
            else:
                for source_id, current in self._statuses.items():
                    if current.next_poll_time is not None:
                        updated = dataclasses.replace(current, next_poll_time=None)
                        self._statuses[source_id] = updated
                        changed.append(updated)
        self._publish(changed)

    def on_cycle_start(self, source: Source) -> None:
        with self._lock:
            current = self._get_or_create(source)
            updated = dataclasses.replace(
                current,
                source_name=source.name,
                is_polling=True,
                last_poll_time=self._clock(),
            )
            self._statuses[source.source_id] = updated
        self._publish([updated])

    def on_cycle_end(self, source: Source, result: CycleResult, *, reschedule: bool = True) -> None:
        """
        reschedule=False 表示这一轮不是定时触发（poll_now），next_poll_time 保持原值。
        """
        with self._lock:
            current = self._get_or_create(source)
            if not self._running:
                next_poll_time = None
            elif reschedule:
                next_poll_time = self._clock() + self.cadence_delta(source)
            else:
                next_poll_time = current.next_poll_time
            updated = dataclasses.replace(
                current,
                is_polling=False,
                change_count=current.change_count + result.change_count,
                last_error=result.error,
                next_poll_time=next_poll_time,
            )
            self._statuses[source.source_id] = updated
        self._publish([updated])

    def get_status(self, source_id: str) -> PollStatus | None:
        with self._lock:
            return self._statuses.get(source_id)

    def snapshot(self) -> dict[str, PollStatus]:
        with self._lock:
            return dict(self._statuses)

    def reset_change_count(self, source_id: str) -> None:
        with self._lock:
            current = self._statuses.get(source_id)
            if current is None:
                return
            updated = dataclasses.replace(current, change_count=0)
            self._statuses[source_id] = updated
        self._publish([updated])

    def forget(self, source_id: str) -> None:
        with self._lock:
            self._statuses.pop(source_id, None)

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """
        订阅状态变化；返回取消订阅函数。回调在触发变化的线程中同步执行，异常只记日志。
        """
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def _get_or_create(self, source: Source) -> PollStatus:
        current = self._statuses.get(source.source_id)
        if current is None:
            current = PollStatus(source_id=source.source_id, source_name=source.name)
        return current

    def _publish(self, statuses: list[PollStatus]) -> None:
        if not statuses:
            return
        with self._lock:
            listeners = tuple(self._listeners)
        for listener in listeners:
            for status in statuses:
                try:
                    listener(status)
                except Exception:  # noqa: BLE001
                    logger.exception("status listener failed: source_id=%s", status.source_id)
