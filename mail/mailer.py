"""
mail/mailer.py -- Transactional email: Jinja2-rendered HTML sent over an HTTP API.

Messages:
  verification   -- "activate your account" link, {FRONTEND_URL}/verify-email/{token}
  welcome        -- sent once the account is activated
  password_reset -- {FRONTEND_URL}/reset-password/{token}, valid one hour

Delivery goes through a transactional-email HTTP API (Brevo-compatible JSON
body: sender, to, subject, htmlContent) with requests. When MAIL_API_KEY is
empty and DEBUG is on, the message is logged instead of sent so local
development needs no mail account.

Routes schedule these calls with FastAPI BackgroundTasks. Mailer.send() raises
MailDeliveryError on failure; the background wrapper send_safely() catches
and logs it, so a mail outage never fails the request that triggered it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

import requests
from jinja2 import Environment, FileSystemLoader, select_autoescape

from core.config import Settings

logger = logging.getLogger("immobilier.mail")

_TEMPLATE_DIR = Path(__file__).parent / "templates"


class MailDeliveryError(Exception):
    pass


class Mailer:
    def __init__(self, settings: Settings, session: requests.Session | None = None) -> None:
        self._api_url = settings.mail_api_url
        self._api_key = settings.mail_api_key
        self._sender = {"name": settings.mail_from_name, "email": settings.mail_from}
        self._frontend_url = settings.frontend_url.rstrip("/")
        self._app_name = settings.app_name
        self._dry_run = settings.debug and not settings.mail_api_key
        self._session = session or requests.Session()
        self._env = Environment(
            loader=FileSystemLoader(str(_TEMPLATE_DIR)),
            autoescape=select_autoescape(["html"]),
        )

    def render(self, template: str, **context) -> str:
        return self._env.get_template(template).render(app_name=self._app_name, **context)

    def send(self, to_email: str, subject: str, html: str) -> None:
        """Deliver one message. Raises MailDeliveryError on any failure."""
        if self._dry_run:
            logger.info("[dry-run] mail to=%s subject=%r\n%s", to_email, subject, html)
            return
        if not self._api_key:
            raise MailDeliveryError("MAIL_API_KEY is not set")
        try:
            resp = self._session.post(
                self._api_url,
                headers={"api-key": self._api_key, "Content-Type": "application/json"},
                json={
                    "sender": self._sender,
                    "to": [{"email": to_email}],
                    "subject": subject,
                    "htmlContent": html,
                },
                timeout=10,
            )
        except requests.RequestException as exc:
            raise MailDeliveryError(str(exc)) from exc
        if resp.status_code not in (200, 201, 202):
            raise MailDeliveryError(f"mail API returned HTTP {resp.status_code}: {resp.text[:200]}")
        logger.info("Mail sent to %s (%s)", to_email, subject)

    # ------------------------------------------------------------------
    # Message builders
    # ------------------------------------------------------------------

    def send_verification(self, to_email: str, name: str, token: str) -> None:
        link = f"{self._frontend_url}/verify-email/{token}"
        html = self.render("verification.html", name=name, link=link)
        self.send(to_email, f"{self._app_name} - Activate your account", html)

    def send_welcome(self, to_email: str, name: str) -> None:
        html = self.render("welcome.html", name=name, login_url=f"{self._frontend_url}/login")
        self.send(to_email, f"Welcome to {self._app_name}", html)

    def send_password_reset(self, to_email: str, name: str, token: str) -> None:
        link = f"{self._frontend_url}/reset-password/{token}"
        html = self.render("password_reset.html", name=name, link=link)
        self.send(to_email, f"{self._app_name} - Reset your password", html)


# ---------------------------------------------------------------------------
# Fire-and-forget wrappers for BackgroundTasks
# ---------------------------------------------------------------------------


def send_safely(send: Callable[..., None], *args) -> None:
    """Run a Mailer.send_* call, logging instead of raising on failure.

    Usage:
        background_tasks.add_task(send_safely, mailer.send_verification, email, name, token)
    """
    try:
        send(*args)
    except Exception:
        logger.exception("Failed to send email to %s", args[0] if args else "?")
