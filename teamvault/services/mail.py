"""
Confirmation Mail
=================

Outbound mail collaborator.

The core only needs ``send_confirmation_mail(user, token, locale)``.
Delivery is decoupled from token issuance: a token stays redeemable no
matter what happens here, and a failed delivery can be repeated through
``request_confirmation_token``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Final, Optional, Protocol

from teamvault.core.auth.credential_store import Token, User


DEFAULT_LOCALE: Final[str] = "en"

_TEMPLATES: Final[dict[str, tuple[str, str]]] = {
    "en": (
        "Confirm your email",
        "Hi {fullname},\n\nConfirm your account by opening:\n{link}\n\n"
        "The link expires at {expires}.\n",
    ),
    "es": (
        "Confirma tu correo",
        "Hola {fullname},\n\nConfirma tu cuenta abriendo:\n{link}\n\n"
        "El enlace caduca el {expires}.\n",
    ),
}


class MailDeliveryError(Exception):
    """Raised by a mailer when a message could not be handed off."""
    pass


@dataclass(frozen=True)
class MailMessage:
    to: str
    subject: str
    body: str


class ConfirmationMailer(Protocol):
    def send_confirmation_mail(self, user: User, token: Token, locale: Optional[str]) -> None:
        ...


def render_confirmation_mail(
    user: User,
    token: Token,
    locale: Optional[str],
    base_url: str,
) -> MailMessage:
    """Build the confirmation message in the closest supported locale."""
    lang = (locale or DEFAULT_LOCALE).split("-")[0].split("_")[0].lower()
    subject, body = _TEMPLATES.get(lang, _TEMPLATES[DEFAULT_LOCALE])
    link = f"{base_url.rstrip('/')}/api/auth/confirm_email/{token.id}"
    return MailMessage(
        to=user.email,
        subject=subject,
        body=body.format(
            fullname=user.fullname,
            link=link,
            expires=token.expires_at.strftime("%Y-%m-%d %H:%M UTC"),
        ),
    )


class LoggingMailer:
    """
    Mailer that renders the message and logs the hand-off.

    The message body (which carries the token) is never logged.
    """

    def __init__(self, base_url: str) -> None:
        self._base_url = base_url
        self._log = logging.getLogger("teamvault.mail")

    def send_confirmation_mail(self, user: User, token: Token, locale: Optional[str]) -> None:
        message = render_confirmation_mail(user, token, locale, self._base_url)
        self._log.info(f"Confirmation mail for {user.id} queued ({message.subject!r})")
