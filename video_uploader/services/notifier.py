from __future__ import annotations

import html
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from video_uploader.config import (
    ADMIN_EMAIL,
    FROM_EMAIL,
    SMTP_HOST,
    SMTP_PASSWORD,
    SMTP_PORT,
    SMTP_USE_TLS,
    SMTP_USERNAME,
)

logger = logging.getLogger("video_uploader.notifier")


def human_bytes(value: int) -> str:
    units = ["B", "KB", "MB", "GB", "TB"]
    size = float(max(value, 0))
    for unit in units:
        if size < 1024 or unit == units[-1]:
            formatted = f"{size:.1f}".rstrip("0").rstrip(".")
            return f"{formatted or '0'} {unit}"
        size /= 1024
    return "0 B"


class EmailNotifier:
    """Sends admin notifications over SMTP. Failures are logged, never raised."""

    def __init__(
        self,
        admin_email: str = ADMIN_EMAIL,
        *,
        host: str = SMTP_HOST,
        port: int = SMTP_PORT,
        username: str = SMTP_USERNAME,
        password: str = SMTP_PASSWORD,
        use_tls: bool = SMTP_USE_TLS,
        from_email: str = FROM_EMAIL,
    ) -> None:
        self.admin_email = admin_email
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.from_email = from_email

    @property
    def enabled(self) -> bool:
        return bool(self.admin_email and self.host)

    def build_message(self, subject: str, text: str, html_body: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.from_email
        msg["To"] = self.admin_email
        msg.attach(MIMEText(text, "plain", "utf-8"))
        msg.attach(MIMEText(html_body, "html", "utf-8"))
        return msg

    def send(self, msg: MIMEMultipart) -> bool:
        if not self.enabled:
            return False
        try:
            with smtplib.SMTP(self.host, self.port, timeout=30) as server:
                if self.use_tls:
                    server.starttls()
                if self.username:
                    server.login(self.username, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("event=notification_failed subject=%r error=%s", msg["Subject"], exc)
            return False
        logger.info("event=notification_sent subject=%r to=%s", msg["Subject"], self.admin_email)
        return True

    def notify_upload_complete(
        self,
        *,
        file_id: str,
        file_name: str,
        file_size: int,
        download_url: str,
        ip: Optional[str] = None,
        uploader: Optional[str] = None,
    ) -> bool:
        who = uploader or "anonymous"
        subject = f"New video upload: {file_name}"
        text = (
            f"A new video was uploaded.\n\n"
            f"File: {file_name}\n"
            f"Size: {human_bytes(file_size)}\n"
            f"Uploaded by: {who}\n"
            f"IP: {ip or 'unknown'}\n"
            f"File id: {file_id}\n"
            f"Download: {download_url}\n"
        )
        html_body = (
            "<h2>New video upload</h2>"
            "<table>"
            f"<tr><td>File</td><td>{html.escape(file_name)}</td></tr>"
            f"<tr><td>Size</td><td>{human_bytes(file_size)}</td></tr>"
            f"<tr><td>Uploaded by</td><td>{html.escape(who)}</td></tr>"
            f"<tr><td>IP</td><td>{html.escape(ip or 'unknown')}</td></tr>"
            "</table>"
            f"<p><a href=\"{html.escape(download_url)}\">Download</a></p>"
        )
        return self.send(self.build_message(subject, text, html_body))

    def notify_upload_failed(self, *, file_id: str, file_name: str, error: str) -> bool:
        subject = f"Upload failed: {file_name}"
        text = f"An upload could not be completed.\n\nFile: {file_name}\nFile id: {file_id}\nError: {error}\n"
        html_body = (
            "<h2>Upload failed</h2>"
            f"<p>File: {html.escape(file_name)}<br>File id: {html.escape(file_id)}</p>"
            f"<pre>{html.escape(error)}</pre>"
        )
        return self.send(self.build_message(subject, text, html_body))
