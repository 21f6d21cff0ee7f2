from __future__ import annotations

from datetime import datetime
from typing import Iterable, Protocol

from ..models import RecordState, StateKey


class StateStore(Protocol):
    """
    状态层接口：
    - record_states：(record_id, source_id, query_id) -> 最近一次观测到的快照 + 通知/已读标记
    - notify_failures：通知失败留痕

    实现需要保证并发调用安全：所有写入按键 upsert，且写入之间串行化。
    """

    def ensure_schema(self) -> None: ...

    def get_state(self, key: StateKey) -> RecordState | None: ...

    def upsert_state(self, state: RecordState) -> None: ...

    def mark_notified(self, key: StateKey, at: datetime) -> None: ...

    def delete_states_for_source(self, source_id: str) -> int: ...

    def delete_states_for_query(self, source_id: str, query_id: str) -> int: ...

    def list_states(self) -> list[RecordState]: ...

    def mark_read(self, key: StateKey) -> None: ...

    def mark_unread(self, key: StateKey) -> None: ...

    def mark_many_read(self, record_ids: Iterable[str]) -> int: ...

    def mark_all_read(self) -> int: ...

    def record_notify_failure(self, *, key: StateKey, channel: str, error: str) -> None: ...
