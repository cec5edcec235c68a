"""
CSRF Guard
==========

Anti-forgery tokens bound to the response channel, built on Flask-WTF.

The guard keeps a random secret in Flask's signed, HttpOnly session cookie
and hands the caller a timed, signed copy of it (``generate_csrf``) to echo
in the response body. On a later state-changing request the client must
present that copy in the ``X-CSRF-Token`` header; a page on another origin
can make the browser send the cookie but cannot read the token to put it
in the header.

Tokens are independent of bearer sessions: they rotate on every checked
response without touching the session, and only sessions created with
``requires_csrf`` are ever checked. The ``CSRFProtect`` extension is not
installed because most API clients never ask for CSRF binding.
"""

from __future__ import annotations

import logging
from typing import Final, Optional

from flask import Flask, g, request, session
from flask_wtf.csrf import generate_csrf, validate_csrf
from wtforms import ValidationError


CSRF_COOKIE_NAME: Final[str] = "csrf_session"
CSRF_HEADER_NAME: Final[str] = "X-CSRF-Token"
CSRF_FIELD_NAME: Final[str] = "csrf_token"
DEFAULT_CSRF_TTL: Final[int] = 3600
MIN_SECRET_LENGTH: Final[int] = 32


class CsrfGuard:
    """
    Double-submit CSRF protection for a Flask app.

    Usage:
        guard = CsrfGuard(secret_key)
        guard.init_app(app)

        # At login: bind a token and return it in the body
        body["csrf"] = guard.generate_new_token()

        # On state-changing requests of a CSRF-protected session
        token, valid = guard.check_token()
        if not valid:
            ...  # 401

    All methods need an active request context.
    """

    __slots__ = ("_secret", "_ttl", "_secure_cookie", "_log")

    def __init__(
        self,
        secret_key: bytes,
        ttl_seconds: int = DEFAULT_CSRF_TTL,
        secure_cookie: bool = True,
    ) -> None:
        """
        Args:
            secret_key: Signing key for the session cookie and tokens
            ttl_seconds: Lifetime of an issued token
            secure_cookie: Set the Secure flag on the cookie
        """
        if len(secret_key) < MIN_SECRET_LENGTH:
            raise ValueError(f"secret_key must be at least {MIN_SECRET_LENGTH} bytes")
        self._secret = bytes(secret_key)
        self._ttl = ttl_seconds
        self._secure_cookie = secure_cookie
        self._log = logging.getLogger("teamvault.csrf")

    def init_app(self, app: Flask) -> None:
        """Configure the session cookie that carries the bound secret."""
        app.secret_key = self._secret
        app.config.update(
            SESSION_COOKIE_NAME=CSRF_COOKIE_NAME,
            SESSION_COOKIE_HTTPONLY=True,
            SESSION_COOKIE_SECURE=self._secure_cookie,
            SESSION_COOKIE_SAMESITE="Strict",
            WTF_CSRF_FIELD_NAME=CSRF_FIELD_NAME,
            WTF_CSRF_TIME_LIMIT=self._ttl,
        )

    def generate_new_token(self) -> str:
        """
        Bind a fresh secret to the response and return its token.

        Any previously issued token stops matching.
        """
        session.pop(CSRF_FIELD_NAME, None)
        g.pop(CSRF_FIELD_NAME, None)
        return generate_csrf()

    def get_token(self) -> Optional[str]:
        """A token for the currently bound secret, or None if nothing is bound."""
        if CSRF_FIELD_NAME not in session:
            return None
        return generate_csrf()

    def check_token(self) -> tuple[Optional[str], bool]:
        """
        Validate the token the client presented against the bound secret.

        On success a new secret is bound and its token returned.

        Returns:
            (token, valid). ``token`` is None when invalid.
        """
        presented = request.headers.get(CSRF_HEADER_NAME) or request.form.get(CSRF_FIELD_NAME)
        try:
            validate_csrf(presented, time_limit=self._ttl)
        except ValidationError as e:
            self._log.info(f"CSRF check failed: {e}")
            return None, False

        return self.generate_new_token(), True
