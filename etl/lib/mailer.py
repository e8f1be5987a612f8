"""
Report delivery over SMTP (SSL). Credentials come from SMTP_SERVER,
SMTP_PORT, SMTP_USER and SMTP_PASSWORD; when they are missing, sending is
skipped with a warning.
"""
from __future__ import annotations

import os
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Optional

from etl.lib.logger import setup_logger

logger = setup_logger("mailer")


class ReportMailer:
    """Send the rendered weekly report to a list of recipients."""

    def __init__(self, sender_name: str = "Marketing Attribution Report"):
        self.smtp_server = os.getenv("SMTP_SERVER", "smtp.gmail.com")
        self.smtp_port = int(os.getenv("SMTP_PORT", "465") or 465)
        self.smtp_user = os.getenv("SMTP_USER", "")
        self.smtp_password = os.getenv("SMTP_PASSWORD", "")
        self.sender_name = sender_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_user and self.smtp_password)

    def send(self, recipients: List[str], subject: str, text_body: str,
             html_body: Optional[str] = None) -> bool:
        """
        Send one message to all recipients.

        Returns:
            True if sent; False when unconfigured, no recipients, or SMTP failed.
        """
        if not recipients:
            logger.warning("No report recipients configured (REPORT_EMAIL_TO), skipping email")
            return False
        if not self.is_configured:
            logger.warning("SMTP_USER or SMTP_PASSWORD not set, skipping email")
            return False

        msg = MIMEMultipart("alternative")
        msg["From"] = f"{self.sender_name} <{self.smtp_user}>"
        msg["To"] = ", ".join(recipients)
        msg["Subject"] = subject
        msg.attach(MIMEText(text_body, "plain", "utf-8"))
        if html_body:
            msg.attach(MIMEText(html_body, "html", "utf-8"))

        try:
            with smtplib.SMTP_SSL(self.smtp_server, self.smtp_port) as server:
                server.login(self.smtp_user, self.smtp_password)
                server.send_message(msg)
            logger.info("Report emailed to %d recipient(s): %s", len(recipients), subject)
            return True
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Failed to send report email: %s", exc)
            return False
