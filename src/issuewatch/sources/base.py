from __future__ import annotations

from typing import Protocol

from ..models import Record, Source


class QueryError(RuntimeError):
    """查询执行失败（网络、鉴权、响应格式等），由 runner 记为该 Source 本轮的 error。"""


class QueryConfigError(QueryError):
    """Source 配置不可用：URL 非法、缺少 token 等。"""


class QueryHttpError(QueryError):
    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"HTTP {status}: {body[:200]}")
        self.status = status
        self.body = body


class QueryDecodeError(QueryError):
    """响应无法解析为预期结构。"""


class QueryExecutor(Protocol):
    """
    平台适配器接口：对某个 Source 执行一条查询表达式，返回当前完整匹配集合（不是增量）。

    约定：
    - 失败时抛 QueryError（或其子类），由 runner 统一捕获
    - 差异计算由引擎完成，适配器不保存任何状态
    """

    def search(self, source: Source, expression: str) -> list[Record]: ...

    def check_connection(self, source: Source) -> bool: ...
