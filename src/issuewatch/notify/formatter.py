from __future__ import annotations

from ..models import Record


def format_change_title(source_name: str, query_name: str) -> str:
    return f"{source_name} - {query_name}"


def format_change_text(record: Record, source_name: str, query_name: str) -> str:
    """
    统一的文本消息格式，兼容日志、webhook 与邮件正文。
    """
    lines = [
        format_change_title(source_name, query_name),
        f"{record.key}: {record.summary}",
        f"Status: {record.status or '-'}",
        f"updated_at: {record.updated_at.isoformat()}",
    ]
    for name in ("priority", "assignee", "reporter"):
        value = record.fields.get(name)
        if value:
            lines.append(f"{name}: {value}")
    if record.url:
        lines.append(f"url: {record.url}")
    return "\n".join(lines)
