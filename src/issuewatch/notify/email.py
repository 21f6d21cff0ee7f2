from __future__ import annotations

import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formatdate, make_msgid

from ..models import Record
from .formatter import format_change_text


@dataclass(slots=True)
class EmailNotifier:
    """
    SMTP 邮件渠道：一条变化一封邮件。

    use_ssl 为 True 时走 SMTPS（通常 465 端口），否则明文连接后按 use_tls 决定是否 STARTTLS。
    from_addr 为空时用登录用户名作为发件人。
    """

    smtp_host: str
    smtp_port: int
    username: str
    password: str
    to_list: tuple[str, ...]
    use_tls: bool = True
    use_ssl: bool = False
    from_addr: str = ""
    timeout_seconds: float = 20.0

    def channel(self) -> str:
        return "email"

    def notify(self, record: Record, source_name: str, query_name: str) -> None:
        if not self.to_list:
            raise ValueError("EmailNotifier.to_list is empty")

        message = self.build_message(record, source_name, query_name)
        if self.use_ssl:
            with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, timeout=self.timeout_seconds) as client:
                self._deliver(client, message)
        else:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout_seconds) as client:
                if self.use_tls:
                    client.starttls()
                self._deliver(client, message)

    def build_message(self, record: Record, source_name: str, query_name: str) -> EmailMessage:
        sender = self.from_addr or self.username
        message = EmailMessage()
        message["Subject"] = f"[{source_name}] {record.key} ({record.status or '-'}): {record.summary}"
        message["From"] = sender
        message["To"] = ", ".join(self.to_list)
        message["Date"] = formatdate(localtime=False)
        message["Message-ID"] = make_msgid(domain=sender.partition("@")[2] or None)
        message.set_content(format_change_text(record, source_name, query_name))
        return message

    def _deliver(self, client: smtplib.SMTP, message: EmailMessage) -> None:
        if self.username:
            client.login(self.username, self.password)
        client.send_message(message)
