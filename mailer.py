"""Outgoing mail over SMTP."""

import logging
import os
import smtplib
from email.message import EmailMessage
from typing import Annotated

from fastapi import Depends

logger = logging.getLogger(__name__)

SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
# Port 465 wants implicit TLS; 587 uses STARTTLS.
SMTP_SECURE = os.getenv("SMTP_SECURE", "false").lower() == "true"
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASS = os.getenv("SMTP_PASS", "")
MAIL_FROM = os.getenv("MAIL_FROM") or SMTP_USER


def volunteer_interest_message(payload: dict) -> tuple[str, str]:
    """Subject and plain-text body telling an owner someone wants to help."""
    subject = f"CareMatch: Someone wants to help with \"{payload['requestTitle']}\""
    lines = [
        "A volunteer is interested in your request.",
        "",
        f"Request: {payload['requestTitle']}",
        f"Region: {payload.get('requestRegion') or '-'}",
        f"Category: {payload.get('requestCategory') or '-'}",
        "",
        f"Name: {payload.get('donorName') or '-'}",
        f"Email: {payload.get('donorEmail') or '-'}",
        f"Phone: {payload.get('donorPhone') or '-'}",
        "",
        "Message:",
        payload["message"],
        "",
        "Sign in to CareMatch to accept or reject this volunteer.",
    ]
    return subject, "\n".join(lines)


def verification_code_message(code: str) -> tuple[str, str]:
    subject = "CareMatch: your verification code"
    text = (
        f"Your CareMatch verification code is {code}.\n"
        "\n"
        "It expires in a few minutes. If you did not try to sign in or sign up, "
        "you can ignore this email."
    )
    return subject, text


def password_reset_message(reset_url: str) -> tuple[str, str]:
    subject = "CareMatch: reset your password"
    text = (
        "Someone asked to reset the password of your CareMatch account.\n"
        "\n"
        f"Choose a new password here: {reset_url}\n"
        "\n"
        "The link works once and expires in 15 minutes. "
        "If this wasn't you, no action is needed."
    )
    return subject, text


class SmtpNotifier:
    def __init__(
        self,
        host: str = SMTP_HOST,
        port: int = SMTP_PORT,
        user: str = SMTP_USER,
        password: str = SMTP_PASS,
        secure: bool = SMTP_SECURE,
        sender: str = MAIL_FROM,
        timeout: float = 15.0,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.secure = secure
        self.sender = sender
        self.timeout = timeout

    def send(self, to_email: str, subject: str, text: str) -> None:
        if not to_email or not to_email.strip():
            raise ValueError("Missing recipient email")
        if not self.host:
            raise RuntimeError("SMTP_HOST is not configured")

        msg = EmailMessage()
        if self.sender:
            msg["From"] = self.sender
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.set_content(text)

        smtp_cls = smtplib.SMTP_SSL if self.secure else smtplib.SMTP
        with smtp_cls(self.host, self.port, timeout=self.timeout) as smtp:
            if not self.secure:
                smtp.starttls()
            if self.user:
                smtp.login(self.user, self.password)
            smtp.send_message(msg)
        logger.info("mail sent to %s: %s", to_email, subject)

    def notify_owner_of_claim(self, owner_email: str, payload: dict) -> bool:
        subject, text = volunteer_interest_message(payload)
        self.send(owner_email, subject, text)
        return True

    def send_verification_code(self, to_email: str, code: str) -> None:
        self.send(to_email, *verification_code_message(code))

    def send_password_reset(self, to_email: str, reset_url: str) -> None:
        self.send(to_email, *password_reset_message(reset_url))


def get_notifier() -> SmtpNotifier:
    return SmtpNotifier()


NotifierDep = Annotated[SmtpNotifier, Depends(get_notifier)]
