"""
mailer.py -- Outbound transactional email.

MailerSendMailer posts to the MailerSend v1 email API. Only the password reset
message is sent from this service; it is plain text plus a minimal HTML body.

NullMailer is used when MAILERSEND_API_TOKEN is not configured (local dev and
tests). It logs that delivery was skipped and never the link itself -- a reset
link in a log file is a usable credential for 15 minutes.

Both satisfy the Mailer protocol and raise MailerError on failure. Callers
decide whether a failed send is fatal; the password reset flow logs it and
carries on.
"""

import html
import logging
from typing import Optional, Protocol

import requests

logger = logging.getLogger("estatehub.mailer")

MAILERSEND_API = "https://api.mailersend.com/v1/email"

_RESET_SUBJECT = "Reset your EstateHub password"

_RESET_TEXT = """Hi {name},

We received a request to reset the password for your EstateHub account.
Open the link below within 15 minutes to choose a new password:

{link}

If you did not ask for this, you can ignore this email. Your password will not change.
"""

_RESET_HTML = """<p>Hi {name},</p>
<p>We received a request to reset the password for your EstateHub account.
The link below is valid for 15 minutes.</p>
<p><a href="{link}">Reset password</a></p>
<p>If you did not ask for this, you can ignore this email.</p>
"""


class MailerError(Exception):
    """The email could not be handed to the delivery provider."""


class Mailer(Protocol):
    def send_password_reset_email(self, to_email: str, to_name: str, reset_link: str) -> None: ...

    def close(self) -> None: ...


class MailerSendMailer:
    def __init__(self, api_token: str, from_email: str, from_name: str = "EstateHub", timeout: float = 10) -> None:
        if not from_email:
            raise ValueError("MAILERSEND_FROM_EMAIL is required when MAILERSEND_API_TOKEN is set.")
        self._from = {"email": from_email, "name": from_name}
        self._timeout = timeout
        # One session per mailer for connection pooling; 3 redirects is plenty
        # for a fixed provider endpoint.
        self._session = requests.Session()
        self._session.max_redirects = 3
        self._session.headers.update({"Authorization": f"Bearer {api_token}"})

    def send_password_reset_email(self, to_email: str, to_name: str, reset_link: str) -> None:
        payload = {
            "from": self._from,
            "to": [{"email": to_email, "name": to_name}],
            "subject": _RESET_SUBJECT,
            "text": _RESET_TEXT.format(name=to_name, link=reset_link),
            "html": _RESET_HTML.format(name=html.escape(to_name), link=html.escape(reset_link, quote=True)),
        }
        try:
            resp = self._session.post(MAILERSEND_API, json=payload, timeout=self._timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise MailerError(f"MailerSend request failed: {e}") from e
        logger.info("Password reset email accepted by MailerSend")

    def close(self) -> None:
        self._session.close()


class NullMailer:
    def send_password_reset_email(self, to_email: str, to_name: str, reset_link: str) -> None:
        logger.warning("Email delivery is not configured; password reset email was not sent")

    def close(self) -> None:
        pass


def build_mailer(api_token: Optional[str], from_email: str, from_name: str) -> Mailer:
    """Pick the delivery backend from configuration."""
    if api_token:
        return MailerSendMailer(api_token, from_email, from_name)
    return NullMailer()
