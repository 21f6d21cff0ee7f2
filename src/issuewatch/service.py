from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Iterable

from .config import AppConfig
from .http_utils import HttpClient
from .models import CycleResult, PollStatus, RecordDisplayItem, Source, StateKey, utc_now
from .notify.base import Notifier
from .notify.email import EmailNotifier
from .notify.log import LogNotifier
from .notify.webhook import WebhookNotifier
from .registry import SourceRegistry
from .runner import CycleRunner
from .scheduler import PollScheduler
from .sources.base import QueryExecutor
from .sources.jira import JiraQueryExecutor
from .state.sqlite_store import SqliteStateStore
from .state.store import StateStore
from .status import StatusAggregator, StatusListener


logger = logging.getLogger(__name__)


class PollingService:
    """
    对外控制面：start / stop / restart / poll_now / reset_change_counter，
    以及 Source/Query 的增删改（会级联删除持久化状态，并在运行中时整体 restart 调度）。

    所有协作者（状态库、查询执行器、通知渠道、时钟）都由构造参数注入，便于测试替换。
    """

    def __init__(
        self,
        *,
        registry: SourceRegistry,
        state: StateStore,
        runner: CycleRunner,
        status: StatusAggregator | None = None,
        cadence_unit_seconds: float = 60.0,
    ) -> None:
        self.registry = registry
        self.state = state
        self.runner = runner
        self.status = status or StatusAggregator(cadence_unit_seconds=cadence_unit_seconds)
        self._control_lock = threading.RLock()
        self._scheduler = PollScheduler(
            self._run_cycle,
            sources_provider=self.registry.enabled_sources,
            cadence_unit_seconds=cadence_unit_seconds,
        )

    @property
    def is_running(self) -> bool:
        return self._scheduler.is_running

    def start(self) -> None:
        with self._control_lock:
            if self._scheduler.is_running:
                return
            self.status.set_running(True, self.registry.enabled_sources())
            self._scheduler.start()

    def stop(self) -> None:
        with self._control_lock:
            self._scheduler.stop()
            self.status.set_running(False)

    def restart(self) -> None:
        with self._control_lock:
            self.stop()
            self.start()

    def poll_now(self, *, wait: bool = True) -> list[CycleResult]:
        """
        立即对所有启用的 Source 各跑一轮，不影响各自的定时节拍。

        wait=False 时在后台线程中执行并立即返回空列表。
        """
        sources = self.registry.enabled_sources()
        results: dict[str, CycleResult] = {}
        threads: list[threading.Thread] = []

        def _poll(source: Source) -> None:
            results[source.source_id] = self._run_cycle(source, scheduled=False)

        for source in sources:
            t = threading.Thread(target=_poll, args=(source,), name=f"poll-now-{source.name}", daemon=True)
            threads.append(t)
            t.start()

        if not wait:
            return []
        for t in threads:
            t.join()
        return [results[s.source_id] for s in sources if s.source_id in results]

    def reset_change_counter(self, source_id: str) -> None:
        self.status.reset_change_count(source_id)

    def get_status(self, source_id: str) -> PollStatus | None:
        return self.status.get_status(source_id)

    def statuses(self) -> dict[str, PollStatus]:
        return self.status.snapshot()

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        return self.status.subscribe(listener)

    def check_connection(self, source_id: str) -> bool:
        source = self.registry.get(source_id)
        if source is None:
            raise KeyError(source_id)
        return self.runner.executor.check_connection(source)

    def add_source(self, source: Source) -> None:
        with self._control_lock:
            self.registry.add_source(source)
            self._restart_if_running()

    def update_source(self, source: Source) -> None:
        """
        替换 Source 定义；被移除的 query 会级联删除其持久化状态。
        """
        with self._control_lock, self.runner.exclusive(source.source_id):
            previous = self.registry.update_source(source)
            kept = {q.query_id for q in source.queries}
            for query in previous.queries:
                if query.query_id not in kept:
                    removed = self.state.delete_states_for_query(source.source_id, query.query_id)
                    logger.info("query removed: source=%s query=%s states_deleted=%d", source.name, query.name, removed)
            self._restart_if_running()

    def delete_source(self, source_id: str) -> None:
        """
        删除 Source 并级联删除其持久化状态与实时状态。

        先等该 Source 进行中的一轮跑完再删，之后排队等锁的轮询会因 Source 已不在 registry 中而跳过。
        """
        with self._control_lock:
            with self.runner.exclusive(source_id):
                source = self.registry.remove_source(source_id)
                removed = self.state.delete_states_for_source(source_id)
                self.status.forget(source_id)
            self.runner.discard(source_id)
            logger.info("source deleted: source=%s states_deleted=%d", source.name, removed)
            self._restart_if_running()

    def delete_query(self, source_id: str, query_id: str) -> None:
        with self._control_lock, self.runner.exclusive(source_id):
            query = self.registry.remove_query(source_id, query_id)
            removed = self.state.delete_states_for_query(source_id, query_id)
            logger.info("query deleted: source_id=%s query=%s states_deleted=%d", source_id, query.name, removed)
            self._restart_if_running()

    def list_records(self) -> list[RecordDisplayItem]:
        """
        持久化记录的展示视图，按 updated_at 倒序；已不在 registry 中的 Source/Query 的残留行会被跳过。
        """
        sources = {s.source_id: s for s in self.registry.snapshot()}
        items: list[RecordDisplayItem] = []
        for state in self.state.list_states():
            source = sources.get(state.source_id)
            query = source.find_query(state.query_id) if source else None
            if source is None or query is None:
                continue
            items.append(
                RecordDisplayItem(
                    record_id=state.record_id,
                    key=state.key,
                    summary=state.summary,
                    status=state.status,
                    updated_at=state.updated_at,
                    source_id=source.source_id,
                    source_name=source.name,
                    query_id=query.query_id,
                    query_name=query.name,
                    url=source.browse_url(state.key),
                    is_read=state.is_read,
                    is_new=state.last_notified_at is None,
                )
            )
        return items

    def mark_read(self, key: StateKey) -> None:
        self.state.mark_read(key)

    def mark_many_read(self, record_ids: Iterable[str]) -> int:
        return self.state.mark_many_read(record_ids)

    def mark_all_read(self) -> int:
        return self.state.mark_all_read()

    def _restart_if_running(self) -> None:
        if self._scheduler.is_running:
            self.restart()

    def _run_cycle(self, source: Source, *, scheduled: bool = True) -> CycleResult:
        """
        在该 Source 的轮询锁内执行一轮，并以 registry 中的当前定义为准。

        Source 已被删除或停用时直接跳过，不落库也不更新状态。
        scheduled=False（poll_now）时不改动 next_poll_time，定时节拍保持不变。
        """
        with self.runner.exclusive(source.source_id):
            current = self.registry.get(source.source_id)
            if current is None or not current.enabled:
                logger.info("cycle skipped, source no longer active: source=%s source_id=%s", source.name, source.source_id)
                return CycleResult(source_id=source.source_id)

            self.status.on_cycle_start(current)
            try:
                result = self.runner.run_cycle(current)
            except Exception as e:  # noqa: BLE001
                logger.exception("cycle crashed: source=%s source_id=%s", current.name, current.source_id)
                result = CycleResult(source_id=current.source_id, error=f"Error polling {current.name}: {type(e).__name__}: {e}")
            self.status.on_cycle_end(current, result, reschedule=scheduled)
            return result


def build_notifiers(config: AppConfig, http: HttpClient) -> tuple[Notifier, ...]:
    notifiers: list[Notifier] = []
    if config.log_notify:
        notifiers.append(LogNotifier())

    if config.webhook:
        webhook_url = config.resolve_env(config.webhook.url_env)
        if webhook_url:
            notifiers.append(WebhookNotifier(webhook_url=webhook_url, http=http))
        else:
            logger.warning("webhook notifier disabled: env %s is not set", config.webhook.url_env)

    if config.email:
        username = config.resolve_env(config.email.user_env) or ""
        password = config.resolve_env(config.email.password_env) or ""
        if config.email.smtp_host and config.email.to_list:
            notifiers.append(
                EmailNotifier(
                    smtp_host=config.email.smtp_host,
                    smtp_port=config.email.smtp_port,
                    username=username,
                    password=password,
                    to_list=config.email.to_list,
                    use_tls=config.email.use_tls,
                    use_ssl=config.email.use_ssl,
                    from_addr=config.email.from_addr,
                )
            )
        else:
            logger.warning("email notifier disabled: smtp_host and to_list are required")
    return tuple(notifiers)


def build_polling_service(
    config: AppConfig,
    *,
    state: StateStore | None = None,
    executor: QueryExecutor | None = None,
    notifiers: tuple[Notifier, ...] | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> PollingService:
    """
    根据配置构建 PollingService。

    - 统一在这里做“配置 -> 实例”的装配，runner/scheduler 只关注流程编排
    - secret/token 只通过环境变量读取，避免落盘
    - 状态库初始化失败（ensure_schema 抛错）直接向调用方抛出，不会被当作单轮错误吞掉
    """
    http = HttpClient()
    if state is None:
        state = SqliteStateStore(config.sqlite_path)
    state.ensure_schema()

    runner = CycleRunner(
        state=state,
        executor=executor if executor is not None else JiraQueryExecutor(http=http),
        notifiers=notifiers if notifiers is not None else build_notifiers(config, http),
        clock=clock,
    )
    return PollingService(
        registry=SourceRegistry(config.sources),
        state=state,
        runner=runner,
        status=StatusAggregator(cadence_unit_seconds=config.cadence_unit_seconds, clock=clock),
        cadence_unit_seconds=config.cadence_unit_seconds,
    )
