from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass
from typing import Any

from ..http_utils import HttpClient
from ..models import Record
from .formatter import format_change_text, format_change_title


@dataclass(slots=True)
class WebhookNotifier:
    """
    通用 JSON webhook 通知（适用于 IM 机器人或自建网关）。

    请求体：
    {"title", "text", "key", "status", "url", "source", "query", "timeStamp", "uuid"}

    响应：HTTP 2xx 即视为成功；若响应是带 code 字段的 JSON，则 code 必须为 0。
    text 超过 max_text_length 会被截断。
    """

    webhook_url: str
    http: HttpClient
    max_text_length: int = 2000

    def channel(self) -> str:
        return "webhook"

    def notify(self, record: Record, source_name: str, query_name: str) -> None:
        payload = self._build_payload(record, source_name, query_name)
        resp = self.http.post_json(self.webhook_url, payload)
        if resp.status >= 400:
            raise RuntimeError(f"webhook failed: status={resp.status}, body={resp.body[:200]!r}")

        if not resp.body.strip():
            return
        try:
            data = json.loads(resp.body.decode("utf-8"))
        except ValueError:
            return
        if isinstance(data, dict) and "code" in data and str(data["code"]) != "0":
            raise RuntimeError(f"webhook returned error: {data!r}")

    def _build_payload(self, record: Record, source_name: str, query_name: str) -> dict[str, Any]:
        text = format_change_text(record, source_name, query_name).strip() or "-"
        if len(text) > self.max_text_length:
            text = text[: self.max_text_length - 1] + "…"
        return {
            "title": format_change_title(source_name, query_name),
            "text": text,
            "key": record.key,
            "status": record.status,
            "url": record.url,
            "source": source_name,
            "query": query_name,
            "timeStamp": int(time.time() * 1000),
            "uuid": uuid.uuid4().hex,
        }
