from __future__ import annotations

import logging
from dataclasses import dataclass

from ..models import Record


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LogNotifier:
    """
    无界面运行时的默认渠道：把变化写进日志。
    """

    level: int = logging.INFO

    def channel(self) -> str:
        return "log"

    def notify(self, record: Record, source_name: str, query_name: str) -> None:
        logger.log(
            self.level,
            "change: source=%s query=%s key=%s status=%s summary=%s url=%s",
            source_name,
            query_name,
            record.key,
            record.status,
            record.summary,
            record.url,
        )
