"""
teamvault Web API
=================
Flask front end for the credential, session and vault-key core.

The HTTP layer only parses requests, enforces body limits, extracts the
bearer token and maps typed errors to status codes; every decision is
delegated to the core components.
"""

import base64
import binascii
import json
import logging
import os
import secrets
from dataclasses import dataclass
from functools import wraps
from typing import Optional

from flask import Blueprint, Flask, current_app, g, jsonify, request
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge

from teamvault.core.auth.argon2_auth import Argon2Hasher
from teamvault.core.auth.credential_store import CredentialStore, Token, User
from teamvault.core.auth.csrf import CsrfGuard
from teamvault.core.auth.session_control import SessionManager
from teamvault.core.config import ServerConfig
from teamvault.core.errors import (
    FatalError,
    InvalidInput,
    NotFound,
    TeamVaultError,
    Unauthorized,
)
from teamvault.core.logging import configure_root_logger
from teamvault.core.vault.key_distributor import VaultKeyDistributor, VaultUser
from teamvault.db import Database
from teamvault.security.audit import AuditEventType, AuditSeverity, TamperAwareAuditLog
from teamvault.services.mail import ConfirmationMailer, LoggingMailer


REGISTER_BODY_LIMIT = 5 * 1024
AUTH_BODY_LIMIT = 1024
MEMBER_BODY_LIMIT = 5 * 1024

_SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
_INVALID_AUTH_HEADER = "Invalid authorization header"
_INVALID_CSRF = "Invalid CSRF token"

log = logging.getLogger("teamvault.web")

api = Blueprint("api", __name__, url_prefix="/api")


# ============================================================
# SERVICES
# ============================================================

@dataclass
class Services:
    config: ServerConfig
    credentials: CredentialStore
    sessions: SessionManager
    vaults: VaultKeyDistributor
    csrf: CsrfGuard
    mailer: ConfirmationMailer
    audit: TamperAwareAuditLog


def build_services(
    config: ServerConfig,
    secret_key: bytes,
    mailer: Optional[ConfirmationMailer] = None,
    audit: Optional[TamperAwareAuditLog] = None,
    secure_cookies: bool = True,
) -> Services:
    """Wire the core components onto one database."""
    db = Database(config.database_path, timeout_seconds=config.database.timeout_seconds)
    security = config.security
    hasher = Argon2Hasher(
        memory_cost=security.argon2_memory_cost,
        time_cost=security.argon2_time_cost,
        parallelism=security.argon2_parallelism,
    )
    vaults = VaultKeyDistributor(db)
    credentials = CredentialStore(
        db,
        hasher,
        vaults,
        security=security,
        only_invited=config.registration.only_invited,
    )
    sessions = SessionManager(
        db,
        ttl_seconds=security.session_ttl_seconds,
        max_lifetime_seconds=security.session_max_lifetime_seconds,
    )
    csrf = CsrfGuard(
        secret_key,
        ttl_seconds=security.csrf_token_ttl_seconds,
        secure_cookie=secure_cookies,
    )
    return Services(
        config=config,
        credentials=credentials,
        sessions=sessions,
        vaults=vaults,
        csrf=csrf,
        mailer=mailer or LoggingMailer(os.environ.get("PUBLIC_URL", "http://localhost:5000")),
        audit=audit or TamperAwareAuditLog(config.paths.log_dir / "audit.log"),
    )


def _services() -> Services:
    return current_app.extensions["teamvault"]


# ============================================================
# REQUEST HELPERS
# ============================================================

def _client_ip() -> Optional[str]:
    real_ip = request.headers.get("X-Real-IP", "").strip()
    if real_ip:
        return real_ip
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote_addr


def _json_body(limit: int) -> dict:
    """Decode a JSON object body, rejecting oversize or malformed input."""
    if request.content_length is not None and request.content_length > limit:
        raise RequestEntityTooLarge()
    raw = request.get_data(cache=False)
    if len(raw) > limit:
        raise RequestEntityTooLarge()
    try:
        data = json.loads(raw or b"null")
    except ValueError as e:
        raise InvalidInput("Malformed JSON body") from e
    if not isinstance(data, dict):
        raise InvalidInput("Malformed JSON body")
    return data


def _str_field(data: dict, name: str, errs: InvalidInput) -> str:
    value = data.get(name, "")
    if not isinstance(value, str):
        errs.set_field_error(name, "must be a string")
        return ""
    return value


def _b64_field(data: dict, name: str, errs: InvalidInput, required: bool = True) -> bytes:
    value = data.get(name)
    if value is None and not required:
        return b""
    if not isinstance(value, str):
        errs.set_field_error(name, "must be base64")
        return b""
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        errs.set_field_error(name, "must be base64")
        return b""


def _b64(blob: bytes) -> str:
    return base64.b64encode(blob).decode("ascii")


def _user_json(user: User) -> dict:
    return {
        "id": user.id,
        "fullname": user.fullname,
        "email": user.email,
        "confirmed_at": user.confirmed_at.isoformat() if user.confirmed_at else None,
        "public_key": _b64(user.public_key),
    }


def _member_json(member: VaultUser) -> dict:
    return {
        "team": member.team,
        "vault": member.vault,
        "user": member.user,
        "key": _b64(member.key),
        "created_at": member.created_at.isoformat(),
        "updated_at": member.updated_at.isoformat(),
    }


def _send_confirmation(user: User, token: Token) -> None:
    """
    Hand the token to the mailer.

    A delivery failure is logged and swallowed: the token is already
    persisted and the user can request another mail.
    """
    try:
        _services().mailer.send_confirmation_mail(user, token, request.headers.get("X-Locale"))
    except Exception:
        log.exception(f"Confirmation mail for {user.id} could not be delivered")


def _audit(event_type: AuditEventType, description: str, user_id: Optional[str] = None,
           severity: AuditSeverity = AuditSeverity.INFO, **details) -> None:
    _services().audit.log(
        event_type,
        severity,
        description,
        user_id=user_id,
        client_ip=_client_ip(),
        details=details,
    )


# ============================================================
# AUTHORIZATION
# ============================================================

def _session_from_header():
    parts = request.headers.get("Authorization", "").split(" ")
    if len(parts) < 2 or parts[0] != "Bearer":
        return None
    return _services().sessions.update_session(parts[1], _client_ip(), request.user_agent.string)


def require_auth(f):
    """
    Validate the bearer session, the CSRF token when the session demands
    it, and that the owning user still exists.
    """
    @wraps(f)
    def wrapper(*args, **kwargs):
        services = _services()
        session = _session_from_header()
        if session is None:
            raise Unauthorized(_INVALID_AUTH_HEADER)

        g.csrf = None
        if session.requires_csrf and request.method not in _SAFE_METHODS:
            token, valid = services.csrf.check_token()
            if not valid:
                _audit(AuditEventType.CSRF_REJECTED, "CSRF token rejected",
                       user_id=session.user_id, severity=AuditSeverity.WARNING)
                raise Unauthorized(_INVALID_CSRF)
            g.csrf = token

        try:
            user = services.credentials.find_user(session.user_id)
        except NotFound:
            revoked = services.sessions.delete_all_sessions(session.user_id)
            _audit(AuditEventType.SESSIONS_REVOKED, "Sessions of a vanished user revoked",
                   user_id=session.user_id, count=revoked)
            raise Unauthorized(_INVALID_AUTH_HEADER) from None

        g.session = session
        g.user = user
        return f(*args, **kwargs)
    return wrapper


def _require_membership(team: str, vault: str) -> None:
    # Non-members cannot tell a missing vault from a forbidden one
    if not _services().vaults.has_access(team, vault, g.user.id):
        raise NotFound(f"Vault {team}/{vault} does not exist")


def _with_csrf(payload: dict) -> dict:
    if g.get("csrf"):
        payload["csrf"] = g.csrf
    return payload


# ============================================================
# HEALTH CHECK
# ============================================================

@api.route("/health")
def health():
    return jsonify({"status": "healthy"})


# ============================================================
# AUTHENTICATION ROUTES
# ============================================================

@api.route("/auth/register", methods=["POST"])
def register():
    data = _json_body(REGISTER_BODY_LIMIT)
    errs = InvalidInput("Invalid registration")
    username = _str_field(data, "id", errs)
    email = _str_field(data, "email", errs)
    fullname = _str_field(data, "fullname", errs)
    password = _str_field(data, "password", errs)
    key_pack = _b64_field(data, "user_keys", errs)
    public_key = _b64_field(data, "user_public_key", errs, required=False)
    vault_public_key = _b64_field(data, "vault_public_keys", errs)
    vault_key = _b64_field(data, "vault_keys", errs)
    errs.raise_if_any()

    try:
        user, token = _services().credentials.register(
            username,
            fullname,
            email,
            password,
            key_pack,
            vault_public_key,
            vault_key,
            user_public_key=public_key or None,
        )
    except Unauthorized:
        _audit(AuditEventType.REGISTRATION_REFUSED, "Registration without invite",
               severity=AuditSeverity.WARNING)
        raise

    _audit(AuditEventType.USER_REGISTERED, "User registered", user_id=user.id)
    _audit(AuditEventType.VAULT_CREATED, "Personal vault created", user_id=user.id)
    _send_confirmation(user, token)
    return "", 200


@api.route("/auth/confirm_email/<token>", methods=["GET"])
def confirm_email(token):
    try:
        user = _services().credentials.confirm_email(token)
    except NotFound:
        raise NotFound("Token does not exist") from None
    _audit(AuditEventType.EMAIL_CONFIRMED, "Email confirmed", user_id=user.id)
    return jsonify(_user_json(user))


@api.route("/auth/request_confirmation_token", methods=["POST"])
def request_confirmation_token():
    data = _json_body(AUTH_BODY_LIMIT)
    errs = InvalidInput("Invalid request")
    email = _str_field(data, "email", errs)
    errs.raise_if_any()

    services = _services()
    token = services.credentials.request_confirmation_token(email)
    if token is not None:
        _send_confirmation(services.credentials.find_user(token.user_id), token)
    return "", 200


@api.route("/auth/login", methods=["POST"])
def login():
    data = _json_body(AUTH_BODY_LIMIT)
    errs = InvalidInput("Invalid login")
    username = _str_field(data, "id", errs)
    password = _str_field(data, "password", errs)
    want_csrf = data.get("want_csrf", False)
    if not isinstance(want_csrf, bool):
        errs.set_field_error("want_csrf", "must be a boolean")
    errs.raise_if_any()

    services = _services()
    try:
        user = services.credentials.authenticate(username, password)
    except Unauthorized:
        _audit(AuditEventType.LOGIN_FAILURE, "Login failed",
               severity=AuditSeverity.WARNING, attempted=username[:64])
        raise

    session = services.sessions.new_session(
        user.id, _client_ip(), request.user_agent.string, want_csrf
    )
    _audit(AuditEventType.LOGIN_SUCCESS, "Login succeeded", user_id=user.id,
           requires_csrf=session.requires_csrf)

    return jsonify({
        "user_id": user.id,
        "session_token": session.id,
        "store_token": session.store_token,
        "public_key": _b64(user.public_key),
        "secret_key": _b64(user.key),
        "csrf_required": session.requires_csrf,
        "csrf": services.csrf.generate_new_token(),
    })


@api.route("/auth/session", methods=["GET"])
def get_session():
    session = _session_from_header()
    if session is None:
        raise Unauthorized(_INVALID_AUTH_HEADER)
    payload = session.to_dict()
    payload["store_token"] = session.store_token
    csrf = _services().csrf.get_token()
    if csrf:
        payload["csrf"] = csrf
    return jsonify(payload)


@api.route("/auth/logout", methods=["POST"])
@require_auth
def logout():
    _services().sessions.delete_session(g.session.id)
    _audit(AuditEventType.LOGOUT, "Session closed", user_id=g.user.id)
    return "", 204


# ============================================================
# VAULT MEMBERSHIP
# ============================================================

@api.route("/vaults/<team>/<vault>/members", methods=["GET"])
@require_auth
def list_members(team, vault):
    _require_membership(team, vault)
    members = _services().vaults.list_members(team, vault)
    return jsonify(_with_csrf({"members": [_member_json(m) for m in members]}))


@api.route("/vaults/<team>/<vault>/members/<user>", methods=["PUT"])
@require_auth
def add_member(team, vault, user):
    _require_membership(team, vault)
    data = _json_body(MEMBER_BODY_LIMIT)
    errs = InvalidInput("Invalid vault membership")
    key = _b64_field(data, "key", errs)
    errs.raise_if_any()

    member = _services().vaults.add_member(team, vault, user, key)
    _audit(AuditEventType.VAULT_MEMBER_ADDED, f"{member.user} added to {team}/{vault}",
           user_id=g.user.id, member=member.user)
    return jsonify(_with_csrf(_member_json(member))), 201


@api.route("/vaults/<team>/<vault>/members/<user>", methods=["DELETE"])
@require_auth
def remove_member(team, vault, user):
    _require_membership(team, vault)
    _services().vaults.remove_member(team, vault, user)
    # The vault secret is not rotated; re-keying is left to the clients
    _audit(AuditEventType.VAULT_MEMBER_REMOVED, f"{user} removed from {team}/{vault}",
           user_id=g.user.id, severity=AuditSeverity.WARNING, member=user)
    return jsonify(_with_csrf({})), 200


# ============================================================
# ERRORS
# ============================================================

def _handle_teamvault_error(err: TeamVaultError):
    if isinstance(err, FatalError):
        log.error("Unrecoverable error while handling request", exc_info=err)
        return jsonify({"error": FatalError.public_message}), FatalError.http_status
    body = {"error": err.public_message}
    if isinstance(err, InvalidInput) and err.field_errors:
        body["fields"] = err.field_errors
    return jsonify(body), err.http_status


def _handle_http_error(err: HTTPException):
    return jsonify({"error": err.name}), err.code


def _handle_unexpected(err: Exception):
    log.error("Unhandled error while handling request", exc_info=err)
    return jsonify({"error": FatalError.public_message}), 500


# ============================================================
# APP FACTORY
# ============================================================

def create_app(
    config: Optional[ServerConfig] = None,
    secret_key: Optional[bytes] = None,
    mailer: Optional[ConfirmationMailer] = None,
    audit: Optional[TamperAwareAuditLog] = None,
    secure_cookies: bool = True,
) -> Flask:
    """
    Build the Flask application.

    Args:
        config: Server configuration (loaded from the environment if omitted)
        secret_key: Signing key for the CSRF session cookie (SECRET_KEY env or random)
        mailer: Confirmation mail collaborator
        audit: Audit log (defaults to <log_dir>/audit.log)
        secure_cookies: Mark cookies Secure; disable only for plain-HTTP tests
    """
    config = config or ServerConfig.get_instance()
    if secret_key is None:
        secret_key = os.environ.get("SECRET_KEY", secrets.token_hex(32)).encode()

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = 16 * 1024
    app.extensions["teamvault"] = build_services(
        config, secret_key, mailer=mailer, audit=audit, secure_cookies=secure_cookies
    )
    app.extensions["teamvault"].csrf.init_app(app)

    app.register_blueprint(api)
    app.register_error_handler(TeamVaultError, _handle_teamvault_error)
    app.register_error_handler(HTTPException, _handle_http_error)
    app.register_error_handler(Exception, _handle_unexpected)
    return app


def main() -> None:
    config = ServerConfig.load()
    config.ensure_directories()
    configure_root_logger(
        log_dir=config.paths.log_dir,
        level=config.logging.level,
        enable_console=config.logging.enable_console,
        enable_file=config.logging.enable_file,
        enable_json=config.logging.enable_json,
    )
    app = create_app(config)
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 5000)))


if __name__ == "__main__":
    main()
