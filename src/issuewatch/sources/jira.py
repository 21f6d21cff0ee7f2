from __future__ import annotations

import logging
import os
import urllib.error
import urllib.parse
from dataclasses import dataclass
from typing import Any, Mapping

from ..http_utils import HttpClient, join_url, with_query_params
from ..models import Record, Source, parse_rfc3339_datetime
from .base import QueryConfigError, QueryDecodeError, QueryError, QueryHttpError


logger = logging.getLogger(__name__)


SEARCH_FIELDS = "summary,status,updated,assignee,reporter,priority"


def _display_name(value: Any) -> str | None:
    if isinstance(value, dict):
        name = value.get("displayName") or value.get("name")
        if isinstance(name, str) and name:
            return name
    return None


def _issue_to_record(source: Source, issue: Mapping[str, Any]) -> Record:
    fields = issue.get("fields")
    if not isinstance(fields, dict):
        raise QueryDecodeError(f"Jira issue without fields: {issue.get('key')!r}")

    issue_id = issue.get("id")
    key = issue.get("key")
    updated = fields.get("updated")
    status = fields.get("status")
    if not isinstance(issue_id, (str, int)) or not isinstance(key, str) or not isinstance(updated, str):
        raise QueryDecodeError(f"Jira issue missing id/key/updated: {issue!r}"[:300])
    try:
        updated_at = parse_rfc3339_datetime(updated)
    except ValueError as e:
        raise QueryDecodeError(f"Jira issue {key} has invalid updated timestamp: {updated!r}") from e

    extra: dict[str, str] = {}
    for name in ("assignee", "reporter", "priority"):
        v = _display_name(fields.get(name))
        if v is not None:
            extra[name] = v

    return Record(
        record_id=str(issue_id),
        key=key,
        summary=str(fields.get("summary") or ""),
        status=str(status.get("name") or "") if isinstance(status, dict) else "",
        updated_at=updated_at,
        fields=extra,
        url=source.browse_url(key),
    )


@dataclass(slots=True)
class JiraQueryExecutor:
    """
    Jira REST v2 查询执行器。

    - 鉴权：Bearer token（Personal Access Token），token 只从 source.token_env 指定的环境变量读取
    - 分页：startAt/maxResults/total，直到拿全当前匹配集合
    """

    http: HttpClient
    page_size: int = 100
    max_pages: int = 50

    def _token(self, source: Source) -> str:
        if not source.token_env:
            raise QueryConfigError(f"source {source.name} has no token_env configured")
        token = os.environ.get(source.token_env)
        if not token:
            raise QueryConfigError(f"token env {source.token_env} is not set for source {source.name}")
        return token

    def _headers(self, source: Source) -> Mapping[str, str]:
        return {
            "Accept": "application/json",
            "Authorization": f"Bearer {self._token(source)}",
        }

    def _base_url(self, source: Source) -> str:
        parsed = urllib.parse.urlparse(source.url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise QueryConfigError(f"invalid source url: {source.url!r}")
        return source.url

    def _get_json(self, url: str, headers: Mapping[str, str]) -> Any:
        try:
            resp = self.http.get(url, headers=headers)
        except urllib.error.HTTPError as e:
            body = e.read().decode("utf-8", errors="replace") if e.fp is not None else ""
            raise QueryHttpError(e.code, body) from e
        except (urllib.error.URLError, TimeoutError, OSError) as e:
            raise QueryError(f"network error: {e}") from e

        if not resp.ok:
            raise QueryHttpError(resp.status, resp.text())
        try:
            return resp.json()
        except ValueError as e:
            raise QueryDecodeError(f"invalid JSON from {resp.url}: {resp.body[:200]!r}") from e

    def search(self, source: Source, expression: str) -> list[Record]:
        base = self._base_url(source)
        headers = self._headers(source)
        search_url = join_url(base, "/rest/api/2/search")

        records: list[Record] = []
        start_at = 0
        for _ in range(self.max_pages):
            url = with_query_params(
                search_url,
                {
                    "jql": expression,
                    "startAt": str(start_at),
                    "maxResults": str(self.page_size),
                    "fields": SEARCH_FIELDS,
                },
            )
            data = self._get_json(url, headers)
            if not isinstance(data, dict) or not isinstance(data.get("issues"), list):
                raise QueryDecodeError(f"Jira search expected object with issues, got {type(data)}")

            issues = [x for x in data["issues"] if isinstance(x, dict)]
            records.extend(_issue_to_record(source, it) for it in issues)

            total = data.get("total")
            start_at += len(issues)
            if not issues or not isinstance(total, int) or start_at >= total:
                break
        return records

    def check_connection(self, source: Source) -> bool:
        """
        调用 /myself 验证地址与 token；配置错误、网络错误或非 2xx 都返回 False（原因写日志）。
        """
        try:
            self._get_json(join_url(self._base_url(source), "/rest/api/2/myself"), self._headers(source))
        except QueryError as e:
            logger.warning("connection check failed: source=%s url=%s error=%s: %s", source.name, source.url, type(e).__name__, e)
            return False
        return True
