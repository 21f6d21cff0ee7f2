"""
Issue Watch (issuewatch)

按 Source 各自的节拍轮询 issue tracker（Jira）的查询，
与本地持久化状态对比识别新增/变化的记录，每个变化只通知一次，
并维护每个 Source 的实时轮询状态。
"""

from .models import ChangeVerdict, CycleResult, PollStatus, Query, Record, RecordState, Source
from .service import PollingService, build_polling_service

__all__ = [
    "ChangeVerdict",
    "CycleResult",
    "PollStatus",
    "PollingService",
    "Query",
    "Record",
    "RecordState",
    "Source",
    "build_polling_service",
]
