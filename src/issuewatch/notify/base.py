from __future__ import annotations

from typing import Protocol

from ..models import Record


class Notifier(Protocol):
    """
    通知接口：把一条变化记录推送到某个渠道。

    约定：
    - notify 失败抛异常，由 runner 统一捕获、记日志并记录 failure，不会中断本轮轮询
    - channel() 用于配置选择与故障记录
    """

    def channel(self) -> str: ...

    def notify(self, record: Record, source_name: str, query_name: str) -> None: ...
