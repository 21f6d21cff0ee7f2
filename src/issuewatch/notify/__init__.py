from .base import Notifier
from .email import EmailNotifier
from .formatter import format_change_text, format_change_title
from .log import LogNotifier
from .webhook import WebhookNotifier

__all__ = [
    "EmailNotifier",
    "LogNotifier",
    "Notifier",
    "WebhookNotifier",
    "format_change_text",
    "format_change_title",
]
