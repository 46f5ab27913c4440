"""
services/mail_service.py — Transactional e-mail (SMTP) and fire-and-forget dispatch.

Mailer
  Builds and sends the four account e-mails over SMTP (STARTTLS or implicit
  TLS). Without MAIL_SMTP_HOST it runs in dev mode: the message is logged
  (recipient redacted, no body) instead of sent.

MailDispatcher
  The only mail entry point services use. Every send runs on a small thread
  pool (or inline when MAIL_SEND_ASYNC is off, as in testing). A failed send
  is logged and dropped: mail errors never reach the caller and never roll
  back the token that was issued alongside.

MailBatch
  Per-request buffer in front of the dispatcher. Routes release it only after
  the transaction has committed, so a rolled-back request sends nothing.

Raw tokens only ever appear inside the message body, never in log lines.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from concurrent.futures import Executor, ThreadPoolExecutor
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Callable, Mapping
from urllib.parse import quote

logger = logging.getLogger(__name__)


def redact_email(email: str | None) -> str:
    """'alice@example.com' → 'al***@example.com'. Used for every log line."""
    if not email or "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class Mailer:

    def __init__(
            self,
            *,
            frontend_url: str,
            smtp_host: str | None = None,
            smtp_port: int = 587,
            smtp_user: str | None = None,
            smtp_password: str | None = None,
            smtp_use_tls: bool = True,
            from_address: str = "no-reply@clientportal.local",
            from_name: str = "Client Portal",
            timeout: int = 30,
    ) -> None:
        self.frontend_url  = frontend_url.rstrip("/")
        self.smtp_host     = smtp_host
        self.smtp_port     = smtp_port
        self.smtp_user     = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls  = smtp_use_tls
        self.from_address  = from_address
        self.from_name     = from_name
        self.timeout       = timeout

    @classmethod
    def from_config(cls, config: Mapping) -> "Mailer":
        return cls(
            frontend_url=config["FRONTEND_URL"],
            smtp_host=config.get("MAIL_SMTP_HOST"),
            smtp_port=int(config.get("MAIL_SMTP_PORT", 587)),
            smtp_user=config.get("MAIL_SMTP_USER"),
            smtp_password=config.get("MAIL_SMTP_PASSWORD"),
            smtp_use_tls=bool(config.get("MAIL_SMTP_USE_TLS", True)),
            from_address=config.get("MAIL_FROM_ADDRESS", "no-reply@clientportal.local"),
            from_name=config.get("MAIL_FROM_NAME", "Client Portal"),
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_address)

    # ── Messages ───────────────────────────────────────────────────────────

    def send_email_verification(self, to_email: str, first_name: str, token: str) -> bool:
        link = f"{self.frontend_url}/auth/verify-email?token={quote(token)}"
        body = (
            f"Hello {first_name},\n\n"
            "thank you for registering with the client portal.\n"
            "Please confirm your e-mail address by opening the link below:\n\n"
            f"{link}\n\n"
            "The link is valid for 24 hours.\n"
            "If you did not create an account, you can ignore this message.\n"
        )
        return self._send(to_email, "Confirm your e-mail address", body)

    def send_password_reset(self, to_email: str, first_name: str, token: str) -> bool:
        link = f"{self.frontend_url}/auth/reset-password?token={quote(token)}"
        body = (
            f"Hello {first_name},\n\n"
            "we received a request to reset the password for your account.\n"
            "Choose a new password here:\n\n"
            f"{link}\n\n"
            "The link is valid for one hour and can be used once.\n"
            "If you did not request a reset, you can ignore this message; "
            "your password stays unchanged.\n"
        )
        return self._send(to_email, "Reset your password", body)

    def send_password_reset_account_not_found(self, to_email: str) -> bool:
        body = (
            "Hello,\n\n"
            "someone asked to reset the password for this e-mail address, "
            "but no client portal account uses it.\n"
            "If you would like an account, you can register here:\n\n"
            f"{self.frontend_url}/auth/register\n\n"
            "If you did not make this request, you can ignore this message.\n"
        )
        return self._send(to_email, "Password reset request", body)

    def send_welcome(self, to_email: str, first_name: str) -> bool:
        body = (
            f"Hello {first_name},\n\n"
            "your e-mail address is confirmed and your account is ready.\n"
            "Sign in here:\n\n"
            f"{self.frontend_url}/auth/login\n"
        )
        return self._send(to_email, "Welcome to the client portal", body)

    # ── Transport ──────────────────────────────────────────────────────────

    def _send(self, to_email: str, subject: str, text_body: str) -> bool:
        """Returns True if the message was handed to the SMTP server (or logged in dev mode)."""
        if not self.is_configured:
            logger.info(
                "Mail not sent (no SMTP host configured): to=%s subject=%r",
                redact_email(to_email), subject,
            )
            return True

        msg = MIMEText(text_body, "plain", "utf-8")
        msg["Subject"] = subject
        msg["From"] = formataddr((self.from_name, self.from_address))
        msg["To"] = to_email

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_address, [to_email], msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                        self.smtp_host, self.smtp_port, context=context, timeout=self.timeout,
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_address, [to_email], msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "SMTP authentication failed: host=%s user=%s code=%s",
                self.smtp_host, self.smtp_user, exc.smtp_code,
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("SMTP recipient refused: to=%s", redact_email(to_email))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "Mail delivery failed: to=%s host=%s error=%s: %s",
                redact_email(to_email), self.smtp_host, type(exc).__name__, exc,
            )
            return False

        logger.info("Mail sent: to=%s subject=%r", redact_email(to_email), subject)
        return True


class MailDispatcher:
    """
    Fire-and-forget front for a Mailer.

    With an executor, sends are queued and the request returns immediately.
    Without one, sends run inline; failures are still logged, not raised.
    """

    def __init__(self, mailer: Mailer, executor: Executor | None = None) -> None:
        self.mailer   = mailer
        self.executor = executor

    @classmethod
    def from_config(cls, config: Mapping) -> "MailDispatcher":
        executor = None
        if config.get("MAIL_SEND_ASYNC", True):
            executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="mail")
        return cls(Mailer.from_config(config), executor)

    def email_verification(self, to_email: str, first_name: str, token: str) -> None:
        self._submit(self.mailer.send_email_verification, to_email, first_name, token)

    def password_reset(self, to_email: str, first_name: str, token: str) -> None:
        self._submit(self.mailer.send_password_reset, to_email, first_name, token)

    def password_reset_account_not_found(self, to_email: str) -> None:
        self._submit(self.mailer.send_password_reset_account_not_found, to_email)

    def welcome(self, to_email: str, first_name: str) -> None:
        self._submit(self.mailer.send_welcome, to_email, first_name)

    def shutdown(self) -> None:
        if self.executor is not None:
            self.executor.shutdown(wait=True)

    def _submit(self, send: Callable[..., bool], to_email: str, *args) -> None:
        if self.executor is None:
            self._run(send, to_email, *args)
        else:
            self.executor.submit(self._run, send, to_email, *args)

    @staticmethod
    def _run(send: Callable[..., bool], to_email: str, *args) -> None:
        # Runs on a worker thread: nothing above it would see an exception.
        try:
            delivered = send(to_email, *args)
        except Exception:
            logger.exception("Mail job %s crashed: to=%s", send.__name__, redact_email(to_email))
            return
        if not delivered:
            logger.warning("Mail job %s was not delivered: to=%s", send.__name__, redact_email(to_email))


class MailBatch:
    """
    Holds the mails a request wants to send until its transaction commits.

    Services call it exactly like a MailDispatcher. The route calls
    release() after db.session.commit(); if the commit raises, release() is
    never reached and the queued mails are dropped with the rolled-back rows.
    """

    def __init__(self, dispatcher: MailDispatcher) -> None:
        self.dispatcher = dispatcher
        self.pending: list[tuple[str, tuple]] = []

    def email_verification(self, to_email: str, first_name: str, token: str) -> None:
        self.pending.append(("email_verification", (to_email, first_name, token)))

    def password_reset(self, to_email: str, first_name: str, token: str) -> None:
        self.pending.append(("password_reset", (to_email, first_name, token)))

    def password_reset_account_not_found(self, to_email: str) -> None:
        self.pending.append(("password_reset_account_not_found", (to_email,)))

    def welcome(self, to_email: str, first_name: str) -> None:
        self.pending.append(("welcome", (to_email, first_name)))

    def release(self) -> None:
        pending, self.pending = self.pending, []
        for name, args in pending:
            getattr(self.dispatcher, name)(*args)
