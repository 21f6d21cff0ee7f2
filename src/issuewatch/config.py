from __future__ import annotations

import hashlib
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping

from .models import Query, Source


DEFAULT_SQLITE_PATH = "./issuewatch_state.sqlite3"
DEFAULT_WEBHOOK_ENV = "ISSUEWATCH_WEBHOOK_URL"


def _require_dict(value: Any, *, where: str) -> Mapping[str, Any]:
    if not isinstance(value, dict):
        raise ValueError(f"Expected object at {where}, got {type(value).__name__}")
    return value


def _require_list(value: Any, *, where: str) -> list[Any]:
    if not isinstance(value, list):
        raise ValueError(f"Expected array at {where}, got {type(value).__name__}")
    return value


def _get_bool(d: Mapping[str, Any], key: str, default: bool) -> bool:
    return bool(d.get(key, default))


def _get_number(d: Mapping[str, Any], key: str, default: Any, cast: Callable[[Any], Any], *, where: str) -> Any:
    v = d.get(key)
    if v is None:
        return default
    if isinstance(v, bool):
        raise ValueError(f"Expected number at {where}.{key}, got bool")
    try:
        return cast(v)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Expected number at {where}.{key}, got {v!r}") from e


def _get_str(d: Mapping[str, Any], key: str, default: str | None = None) -> str | None:
    v = d.get(key)
    if v is None or v == "":
        return default
    return str(v)


def _get_str_tuple(d: Mapping[str, Any], key: str, *, where: str) -> tuple[str, ...]:
    v = d.get(key)
    if v is None:
        return ()
    if isinstance(v, str):
        return tuple(x.strip() for x in v.split(",") if x.strip())
    return tuple(str(x) for x in _require_list(v, where=f"{where}.{key}"))


def _stable_id(*parts: str) -> str:
    payload = "\x1f".join(parts).encode("utf-8")
    return hashlib.sha256(payload).hexdigest()[:16]


@dataclass(frozen=True, slots=True)
class WebhookNotifyConfig:
    """
    webhook 通知配置。

    url_env:
      - webhook URL 的环境变量名（URL 里通常带 token，不落盘）
    """

    url_env: str


@dataclass(frozen=True, slots=True)
class EmailNotifyConfig:
    """
    邮件通知配置（SMTP）。
    """

    smtp_host: str
    smtp_port: int
    user_env: str
    password_env: str
    to_list: tuple[str, ...]
    use_tls: bool = True
    use_ssl: bool = False
    from_addr: str = ""


@dataclass(frozen=True, slots=True)
class AppConfig:
    """
    应用总配置。

    cadence_unit_seconds:
      - 一个轮询单位对应的秒数；Source.poll_interval 以该单位计（默认 60，即分钟）
    sqlite_path:
      - SQLite 状态库路径（负责 record_states / notify_failures）
    sources:
      - 被监控的 Source 列表（含各自的 query）
    log_notify:
      - 是否启用日志渠道（无其他渠道时默认启用）
    """

    cadence_unit_seconds: float
    sqlite_path: str
    sources: tuple[Source, ...]
    log_notify: bool
    webhook: WebhookNotifyConfig | None
    email: EmailNotifyConfig | None

    def resolve_env(self, env_name: str | None) -> str | None:
        if not env_name:
            return None
        return os.environ.get(env_name)


def _parse_query(raw: Any, *, source_id: str, where: str) -> Query:
    q = _require_dict(raw, where=where)
    name = _get_str(q, "name") or ""
    expression = _get_str(q, "jql") or _get_str(q, "query")
    if not expression:
        raise ValueError(f"Missing 'jql' at {where}")
    query_id = _get_str(q, "id") or _stable_id(source_id, name or expression)
    return Query(
        query_id=query_id,
        name=name or expression,
        expression=expression,
        enabled=_get_bool(q, "enabled", True),
    )


def _parse_source(raw: Any, *, where: str) -> Source:
    s = _require_dict(raw, where=where)
    name = _get_str(s, "name")
    url = _get_str(s, "url")
    if not name or not url:
        raise ValueError(f"Source at {where} requires 'name' and 'url'")
    source_id = _get_str(s, "id") or _stable_id(name, url)

    queries = tuple(
        _parse_query(q, source_id=source_id, where=f"{where}.queries[{i}]")
        for i, q in enumerate(_require_list(s.get("queries", []), where=f"{where}.queries"))
    )
    query_ids = [q.query_id for q in queries]
    if len(set(query_ids)) != len(query_ids):
        raise ValueError(f"Duplicate query id in {where}.queries")

    return Source(
        source_id=source_id,
        name=name,
        url=url,
        poll_interval=_get_number(s, "poll_interval", 5, int, where=where),
        enabled=_get_bool(s, "enabled", True),
        queries=queries,
        token_env=_get_str(s, "token_env", None),
    )


def _parse_notify(raw: Any) -> tuple[bool, WebhookNotifyConfig | None, EmailNotifyConfig | None]:
    notify = _require_dict(raw, where="$.notify")

    webhook: WebhookNotifyConfig | None = None
    if notify.get("webhook") is not None:
        wh = _require_dict(notify["webhook"], where="$.notify.webhook")
        webhook = WebhookNotifyConfig(url_env=_get_str(wh, "url_env", DEFAULT_WEBHOOK_ENV) or DEFAULT_WEBHOOK_ENV)

    email: EmailNotifyConfig | None = None
    if notify.get("email") is not None:
        em = _require_dict(notify["email"], where="$.notify.email")
        email = EmailNotifyConfig(
            smtp_host=_get_str(em, "smtp_host", "") or "",
            smtp_port=_get_number(em, "smtp_port", 587, int, where="$.notify.email"),
            user_env=_get_str(em, "user_env", "") or "",
            password_env=_get_str(em, "password_env", "") or "",
            to_list=_get_str_tuple(em, "to_list", where="$.notify.email"),
            use_tls=_get_bool(em, "use_tls", True),
            use_ssl=_get_bool(em, "use_ssl", False),
            from_addr=_get_str(em, "from_addr", "") or "",
        )

    # 没有配置任何外部渠道时，默认把变化写进日志
    log_enabled = webhook is None and email is None
    if notify.get("log") is not None:
        log_enabled = _get_bool(_require_dict(notify["log"], where="$.notify.log"), "enabled", True)
    return log_enabled, webhook, email


def load_config(config_path: str) -> AppConfig:
    """
    使用 JSON 作为配置落地形式，避免引入第三方 YAML 解析依赖。

    JSON 顶层结构（示意）：
    {
      "cadence_unit_seconds": 60,
      "state": { "sqlite_path": "./issuewatch_state.sqlite3" },
      "sources": [
        { "id", "name", "url", "token_env", "poll_interval", "enabled",
          "queries": [ { "id", "name", "jql", "enabled" } ] }
      ],
      "notify": { "log": {"enabled"}, "webhook": {"url_env"}, "email": {...} }
    }

    - id 缺省时由 name/url（query 为 name 或 jql）派生，配置不变则 id 不变
    - secret 一律只写环境变量名（token_env/url_env/user_env/password_env）
    - 结构或取值非法时抛 ValueError，指出出错位置
    """
    root = _require_dict(json.loads(Path(config_path).read_text(encoding="utf-8")), where="$")

    cadence_unit_seconds = _get_number(root, "cadence_unit_seconds", 60.0, float, where="$")
    if cadence_unit_seconds <= 0:
        raise ValueError("cadence_unit_seconds must be > 0")

    state = _require_dict(root.get("state") or {}, where="$.state")
    sqlite_path = _get_str(state, "sqlite_path", DEFAULT_SQLITE_PATH) or DEFAULT_SQLITE_PATH

    sources = tuple(
        _parse_source(s, where=f"$.sources[{i}]")
        for i, s in enumerate(_require_list(root.get("sources", []), where="$.sources"))
    )
    source_ids = [s.source_id for s in sources]
    if len(set(source_ids)) != len(source_ids):
        raise ValueError("Duplicate source id in $.sources")

    log_notify, webhook, email = _parse_notify(root.get("notify") or {})
    return AppConfig(
        cadence_unit_seconds=cadence_unit_seconds,
        sqlite_path=sqlite_path,
        sources=sources,
        log_notify=log_notify,
        webhook=webhook,
        email=email,
    )
