from __future__ import annotations

import json
import logging
import random
import ssl
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Mapping


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class HttpResponse:
    status: int
    url: str
    headers: Mapping[str, str]
    body: bytes

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def text(self, encoding: str = "utf-8") -> str:
        return self.body.decode(encoding, errors="replace")

    def json(self) -> Any:
        return json.loads(self.body.decode("utf-8"))


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """
    单次请求内的退避重试策略（轮询层面不再重试，下一个周期即是重试）。

    - 仅对 retry_statuses 中的状态码与网络错误重试
    - 429 带 Retry-After（秒）时优先按服务端要求等待，但不超过 max_delay_seconds
    """

    max_retries: int = 3
    base_backoff_seconds: float = 0.8
    max_delay_seconds: float = 30.0
    retry_statuses: frozenset[int] = field(default_factory=lambda: frozenset({429, 500, 502, 503, 504}))

    def delay(self, attempt: int, retry_after: str | None = None) -> float:
        if retry_after:
            try:
                return min(self.max_delay_seconds, max(0.0, float(retry_after)))
            except ValueError:
                pass
        backoff = self.base_backoff_seconds * (2**attempt)
        return min(self.max_delay_seconds, backoff + random.random() * 0.25 * backoff)


class HttpClient:
    """
    轻量 HTTP 客户端（仅依赖标准库），供 Jira 查询与 webhook 通知共用。

    非 2xx 且不再重试时抛出 urllib.error.HTTPError，由调用方转换成各自的错误类型。
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 20.0,
        user_agent: str = "issue-watch/0",
        retry: RetryPolicy | None = None,
        verify_ssl: bool = True,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        self._user_agent = user_agent
        self._retry = retry or RetryPolicy()
        self._ssl_context = ssl.create_default_context() if verify_ssl else ssl._create_unverified_context()

    def get(self, url: str, *, headers: Mapping[str, str] | None = None) -> HttpResponse:
        return self.request("GET", url, headers=headers)

    def post_json(self, url: str, payload: Any, *, headers: Mapping[str, str] | None = None) -> HttpResponse:
        merged = {"Content-Type": "application/json; charset=utf-8", "Accept": "application/json"}
        merged.update(headers or {})
        return self.request("POST", url, headers=merged, data=json.dumps(payload, ensure_ascii=False).encode("utf-8"))

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        data: bytes | None = None,
    ) -> HttpResponse:
        req = urllib.request.Request(
            url=url,
            headers={"User-Agent": self._user_agent, **(headers or {})},
            data=data,
            method=method,
        )
        attempt = 0
        while True:
            try:
                return self._send(req)
            except urllib.error.HTTPError as e:
                if e.code not in self._retry.retry_statuses or attempt >= self._retry.max_retries:
                    raise
                wait = self._retry.delay(attempt, e.headers.get("Retry-After") if e.headers else None)
                reason = f"status={e.code}"
            except (urllib.error.URLError, TimeoutError) as e:
                if attempt >= self._retry.max_retries:
                    raise
                wait = self._retry.delay(attempt)
                reason = f"{type(e).__name__}: {e}"

            logger.warning(
                "http retry: method=%s url=%s attempt=%d wait=%.2fs reason=%s",
                method,
                _redact(url),
                attempt + 1,
                wait,
                reason,
            )
            time.sleep(wait)
            attempt += 1

    def _send(self, req: urllib.request.Request) -> HttpResponse:
        with urllib.request.urlopen(req, timeout=self._timeout_seconds, context=self._ssl_context) as resp:
            return HttpResponse(
                status=getattr(resp, "status", 200),
                url=resp.geturl(),
                headers=dict(resp.headers.items()),
                body=resp.read(),
            )


def _redact(url: str) -> str:
    # webhook URL 的 query 里常带 token，日志只保留 scheme/host/path
    parsed = urllib.parse.urlparse(url)
    return urllib.parse.urlunparse(parsed._replace(query="", fragment=""))


def with_query_params(url: str, params: Mapping[str, str | None]) -> str:
    parsed = urllib.parse.urlparse(url)
    merged = dict(urllib.parse.parse_qsl(parsed.query, keep_blank_values=True))
    for k, v in params.items():
        if v is not None:
            merged[k] = v
    return urllib.parse.urlunparse(parsed._replace(query=urllib.parse.urlencode(merged)))


def join_url(base: str, path: str) -> str:
    """
    拼接 base URL 与 API 路径，保留 base 中的上下文路径（例如 https://host/jira）。
    """
    return base.rstrip("/") + "/" + path.lstrip("/")
