from __future__ import annotations

from dataclasses import dataclass

from ..models import ChangeVerdict, Record, RecordState


@dataclass(frozen=True, slots=True)
class ChangeDetector:
    """
    变化判定（纯函数，无副作用）：

    - 没有历史状态：NEW
    - 有历史状态但从未通知过（last_notified_at 为空）：CHANGED，避免“落库后、通知前中断”导致漏通知
    - 否则仅当平台上报的 updated_at 严格晚于 last_notified_at 时为 CHANGED

    比较使用平台的修改时间而非拉取时间；相等视为 UNCHANGED。
    """

    def decide(self, record: Record, previous: RecordState | None) -> ChangeVerdict:
        if previous is None:
            return ChangeVerdict.NEW
        if previous.last_notified_at is None:
            return ChangeVerdict.CHANGED
        if record.updated_at > previous.last_notified_at:
            return ChangeVerdict.CHANGED
        return ChangeVerdict.UNCHANGED
