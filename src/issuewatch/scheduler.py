from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from .models import Source


logger = logging.getLogger(__name__)


CycleCallback = Callable[[Source], None]


class RecurringTask:
    """
    单个 Source 的周期任务：独立线程，启动后立即触发一次，然后每 interval 秒触发一次。

    - 触发时间按 monotonic 截止时间推进，单次轮询耗时不会让后续节拍漂移
    - cancel() 只阻止后续触发，正在执行的轮询会跑完
    """

    def __init__(self, source: Source, interval_seconds: float, callback: CycleCallback) -> None:
        self.source = source
        self.interval_seconds = interval_seconds
        self._callback = callback
        self._cancelled = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            name=f"poll-{source.name}",
            daemon=True,
        )

    def start(self) -> None:
        self._thread.start()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def join(self, timeout: float | None = None) -> None:
        self._thread.join(timeout)

    def _run(self) -> None:
        next_at = time.monotonic()
        while not self._cancelled.is_set():
            self._fire()
            next_at += self.interval_seconds
            now = time.monotonic()
            if next_at < now:
                # 本轮超过一个周期：跳过错过的节拍，从现在重新计时
                next_at = now
            if self._cancelled.wait(max(0.0, next_at - now)):
                break

    def _fire(self) -> None:
        try:
            self._callback(self.source)
        except Exception:  # noqa: BLE001
            logger.exception("scheduled cycle crashed: source=%s source_id=%s", self.source.name, self.source.source_id)


class PollScheduler:
    """
    轮询调度器：Stopped -> Running -> Stopped。

    - start()：已运行则忽略；否则为每个启用的 Source 重建一个 RecurringTask
    - stop()：取消全部任务，不中断进行中的轮询
    - restart()：stop() + start()；Source 列表或 cadence 变更时必须整体重建，不做增量调整

    各 Source 的任务互相独立：某个 Source 慢或失败不会推迟其他 Source 的节拍。
    """

    def __init__(
        self,
        callback: CycleCallback,
        *,
        sources_provider: Callable[[], tuple[Source, ...]],
        cadence_unit_seconds: float = 60.0,
    ) -> None:
        self._callback = callback
        self._sources_provider = sources_provider
        self._cadence_unit_seconds = cadence_unit_seconds
        self._lock = threading.Lock()
        self._tasks: dict[str, RecurringTask] = {}
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def scheduled_source_ids(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._tasks)

    def start(self) -> tuple[Source, ...]:
        """
        启动调度，返回本次被调度的 Source 快照（已运行时返回空元组）。
        """
        with self._lock:
            if self._running:
                return ()
            self._running = True
            sources = tuple(s for s in self._sources_provider() if s.enabled)
            for source in sources:
                task = RecurringTask(
                    source,
                    interval_seconds=source.poll_interval * self._cadence_unit_seconds,
                    callback=self._callback,
                )
                self._tasks[source.source_id] = task
            tasks = tuple(self._tasks.values())

        for task in tasks:
            task.start()
        logger.info("scheduler started: sources=%d", len(tasks))
        return sources

    def stop(self) -> None:
        with self._lock:
            tasks = tuple(self._tasks.values())
            self._tasks.clear()
            was_running = self._running
            self._running = False

        for task in tasks:
            task.cancel()
        if was_running:
            logger.info("scheduler stopped: cancelled_tasks=%d", len(tasks))

    def restart(self) -> tuple[Source, ...]:
        self.stop()
        return self.start()
