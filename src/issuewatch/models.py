from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Mapping


_COMPACT_OFFSET = re.compile(r"([+-]\d{2})(\d{2})$")


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def parse_rfc3339_datetime(value: str) -> datetime:
    """
    解析常见的 RFC3339/ISO8601 时间串为 UTC datetime。

    兼容：
    - 2026-02-10T12:34:56Z
    - 2026-02-10T12:34:56+00:00
    - 2026-02-10T12:34:56.123+0000（Jira 的 updated 字段格式）
    """
    value = value.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    value = _COMPACT_OFFSET.sub(r"\1:\2", value)
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def format_timestamp(value: datetime) -> str:
    """
    持久化使用的时间串：统一 UTC + 微秒精度，保证字符串顺序与时间顺序一致。
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


@dataclass(frozen=True, slots=True)
class Query:
    """
    某个 Source 下的一条命名查询（例如一条 JQL）。

    query_id 在所属 Source 内唯一，修改 name/expression 不会改变 query_id；
    持久化状态按 query_id 建键。
    """

    query_id: str
    name: str
    expression: str
    enabled: bool = True


@dataclass(frozen=True, slots=True)
class Source:
    """
    一个被监控的 issue tracker 实例。

    poll_interval 以“轮询单位”计（默认 1 单位 = 60 秒，见 AppConfig.cadence_unit_seconds）。
    """

    source_id: str
    name: str
    url: str
    poll_interval: int = 5
    enabled: bool = True
    queries: tuple[Query, ...] = ()
    token_env: str | None = None

    def __post_init__(self) -> None:
        if isinstance(self.poll_interval, bool) or int(self.poll_interval) < 1:
            raise ValueError(f"poll_interval must be >= 1, got {self.poll_interval!r} for source {self.source_id}")

    def enabled_queries(self) -> tuple[Query, ...]:
        return tuple(q for q in self.queries if q.enabled)

    def find_query(self, query_id: str) -> Query | None:
        for q in self.queries:
            if q.query_id == query_id:
                return q
        return None

    def browse_url(self, record_key: str) -> str:
        return f"{self.url.rstrip('/')}/browse/{record_key}"


@dataclass(frozen=True, slots=True)
class Record:
    """
    一次查询返回的单条记录（每轮重新拉取，不归引擎所有）。

    updated_at 是平台上报的最后修改时间，而不是本地拉取时间。
    """

    record_id: str
    key: str
    summary: str
    status: str
    updated_at: datetime
    fields: Mapping[str, str] = field(default_factory=dict)
    url: str = ""


@dataclass(frozen=True, slots=True)
class StateKey:
    record_id: str
    source_id: str
    query_id: str


@dataclass(frozen=True, slots=True)
class RecordState:
    """
    持久化状态：每个 (record_id, source_id, query_id) 一行。

    - last_notified_at 为 None 表示“从未通知过”（可能是上一轮落库后、通知前中断）
    - is_read 为用户确认标记，与通知状态互相独立
    """

    record_id: str
    key: str
    source_id: str
    query_id: str
    summary: str
    status: str
    updated_at: datetime
    last_notified_at: datetime | None = None
    is_read: bool = False

    @property
    def state_key(self) -> StateKey:
        return StateKey(record_id=self.record_id, source_id=self.source_id, query_id=self.query_id)


class ChangeVerdict(str, Enum):
    NEW = "new"
    CHANGED = "changed"
    UNCHANGED = "unchanged"

    @property
    def should_notify(self) -> bool:
        return self is not ChangeVerdict.UNCHANGED


@dataclass(frozen=True, slots=True)
class CycleResult:
    """
    单个 Source 一轮轮询的结果摘要。

    error 为本轮最后一次失败的描述（多个 query 失败时后者覆盖前者），成功时为 None。
    """

    source_id: str
    change_count: int = 0
    error: str | None = None
    queries_polled: int = 0
    query_errors: int = 0
    records_fetched: int = 0
    persist_failures: int = 0
    notify_failures: int = 0
    duration_ms: int = 0


@dataclass(frozen=True, slots=True)
class PollStatus:
    """
    每个 Source 的实时轮询状态（不落库，由 StatusAggregator 维护）。
    """

    source_id: str
    source_name: str
    last_poll_time: datetime | None = None
    next_poll_time: datetime | None = None
    is_polling: bool = False
    change_count: int = 0
    last_error: str | None = None

    @property
    def has_changes(self) -> bool:
        return self.change_count > 0


@dataclass(frozen=True, slots=True)
class RecordDisplayItem:
    """
    面向展示的记录视图：持久化状态 + Source/Query 名称。

    is_new 表示尚未发出过通知（last_notified_at 为空）。
    """

    record_id: str
    key: str
    summary: str
    status: str
    updated_at: datetime
    source_id: str
    source_name: str
    query_id: str
    query_name: str
    url: str
    is_read: bool
    is_new: bool
