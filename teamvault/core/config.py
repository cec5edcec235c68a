"""
Server Configuration Module
===========================

Provides immutable, environment-aware configuration with security-first defaults.

Security Features:
- Immutable configuration after initialization
- Environment variable override support
- No secrets in default values
- Sensitive keys are never read from the environment
"""

from __future__ import annotations

import hashlib
import os
import platform
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final, Optional


# Security Constants
_SENSITIVE_KEYS: Final[frozenset[str]] = frozenset({
    "password", "secret", "token_secret", "api_key",
    "private", "credential", "salt"
})


def _is_sensitive_key(key: str) -> bool:
    """Check if a configuration key might contain sensitive data."""
    key_lower = key.lower()
    return any(sensitive in key_lower for sensitive in _SENSITIVE_KEYS)


def _get_default_data_dir() -> Path:
    """Get OS-appropriate default data directory."""
    system = platform.system().lower()

    if system == "windows":
        base = Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
    elif system == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:  # Linux and others
        base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))

    return base / "teamvault"


def _get_default_log_dir() -> Path:
    """Get OS-appropriate default log directory."""
    system = platform.system().lower()

    if system == "windows":
        base = Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
        return base / "teamvault" / "Logs"
    elif system == "darwin":
        return Path.home() / "Library" / "Logs" / "teamvault"
    else:
        return Path(os.environ.get("XDG_STATE_HOME", Path.home() / ".local" / "state")) / "teamvault" / "logs"


@dataclass(frozen=True, slots=True)
class PathConfig:
    """Immutable path configuration with OS-aware defaults."""

    data_dir: Path = field(default_factory=_get_default_data_dir)
    log_dir: Path = field(default_factory=_get_default_log_dir)

    def __post_init__(self) -> None:
        for field_name in ["data_dir", "log_dir"]:
            path = getattr(self, field_name)
            if not path.is_absolute():
                raise ValueError(f"{field_name} must be an absolute path: {path}")


@dataclass(frozen=True, slots=True)
class SecurityConfig:
    """Immutable security configuration."""

    # Argon2id parameters (OWASP 2023 minimums)
    argon2_memory_cost: int = 102400  # KiB
    argon2_time_cost: int = 2
    argon2_parallelism: int = 4

    # Sessions
    session_ttl_seconds: int = 86400  # 1 day, renewed on use
    session_max_lifetime_seconds: int = 30 * 86400

    # Email confirmation tokens
    confirmation_token_ttl_seconds: int = 2 * 86400

    # Anti-forgery tokens
    csrf_token_ttl_seconds: int = 3600

    # Password policy
    min_password_length: int = 8
    max_password_length: int = 128

    def __post_init__(self) -> None:
        """Validate security settings."""
        if self.session_ttl_seconds <= 0:
            raise ValueError("session_ttl_seconds must be positive")
        if self.session_max_lifetime_seconds < self.session_ttl_seconds:
            raise ValueError("session_max_lifetime_seconds must be >= session_ttl_seconds")
        if self.confirmation_token_ttl_seconds <= 0:
            raise ValueError("confirmation_token_ttl_seconds must be positive")
        if self.csrf_token_ttl_seconds <= 0:
            raise ValueError("csrf_token_ttl_seconds must be positive")
        if self.min_password_length < 1:
            raise ValueError("min_password_length must be at least 1")
        if self.max_password_length < self.min_password_length:
            raise ValueError("max_password_length must be >= min_password_length")
        if self.min_password_length < 8:
            warnings.warn(
                "Passwords shorter than 8 characters are allowed.",
                SecurityWarning,
                stacklevel=2,
            )


@dataclass(frozen=True, slots=True)
class DatabaseConfig:
    """Backing store location and lock timeout."""

    path: Optional[Path] = None  # defaults to <data_dir>/teamvault.db
    timeout_seconds: float = 5.0

    def __post_init__(self) -> None:
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")


@dataclass(frozen=True, slots=True)
class RegistrationConfig:
    """Who may register."""

    only_invited: bool = False


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Immutable logging configuration."""

    level: str = "INFO"
    max_file_size_bytes: int = 10 * 1024 * 1024  # 10 MB
    backup_count: int = 5
    enable_console: bool = True
    enable_file: bool = False
    enable_json: bool = False

    def __post_init__(self) -> None:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if self.level.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {self.level}")


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Immutable application configuration."""

    app_name: str = "teamvault"
    version: str = "0.1.0"
    debug_mode: bool = False

    def __post_init__(self) -> None:
        if self.debug_mode:
            warnings.warn(
                "Debug mode is enabled. This should NEVER be used in production.",
                SecurityWarning,
                stacklevel=2
            )


class ServerConfig:
    """
    Centralized, immutable configuration loader with environment override support.

    Usage:
        config = ServerConfig.load()
        ttl = config.security.session_ttl_seconds
        db_path = config.database_path
    """

    __slots__ = (
        "_paths", "_security", "_database", "_registration",
        "_logging", "_app", "_frozen", "_config_hash",
    )

    _instance: Optional[ServerConfig] = None

    def __init__(
        self,
        paths: Optional[PathConfig] = None,
        security: Optional[SecurityConfig] = None,
        database: Optional[DatabaseConfig] = None,
        registration: Optional[RegistrationConfig] = None,
        logging: Optional[LoggingConfig] = None,
        app: Optional[AppConfig] = None,
    ) -> None:
        """Initialize configuration. Use ServerConfig.load() for standard initialization."""
        object.__setattr__(self, "_frozen", False)
        object.__setattr__(self, "_paths", paths or PathConfig())
        object.__setattr__(self, "_security", security or SecurityConfig())
        object.__setattr__(self, "_database", database or DatabaseConfig())
        object.__setattr__(self, "_registration", registration or RegistrationConfig())
        object.__setattr__(self, "_logging", logging or LoggingConfig())
        object.__setattr__(self, "_app", app or AppConfig())
        object.__setattr__(self, "_config_hash", self._compute_hash())
        object.__setattr__(self, "_frozen", True)

    def _compute_hash(self) -> str:
        """Compute a hash of the configuration for integrity checking."""
        config_str = (
            f"{self._paths}|{self._security}|{self._database}|"
            f"{self._registration}|{self._logging}|{self._app}"
        )
        return hashlib.sha256(config_str.encode()).hexdigest()[:16]

    @property
    def paths(self) -> PathConfig:
        return self._paths

    @property
    def security(self) -> SecurityConfig:
        return self._security

    @property
    def database(self) -> DatabaseConfig:
        return self._database

    @property
    def registration(self) -> RegistrationConfig:
        return self._registration

    @property
    def logging(self) -> LoggingConfig:
        return self._logging

    @property
    def app(self) -> AppConfig:
        return self._app

    @property
    def config_hash(self) -> str:
        return self._config_hash

    @property
    def database_path(self) -> Path:
        """Resolved sqlite file location."""
        return self._database.path or self._paths.data_dir / "teamvault.db"

    @classmethod
    def load(cls, env_prefix: str = "TEAMVAULT") -> ServerConfig:
        """
        Load configuration with environment variable overrides.

        Environment variables should be prefixed with TEAMVAULT_ and use
        double underscores for nested values.

        Examples:
            TEAMVAULT_LOGGING__LEVEL=DEBUG
            TEAMVAULT_SECURITY__SESSION_TTL_SECONDS=3600
            TEAMVAULT_DATABASE__PATH=/srv/teamvault/teamvault.db
            TEAMVAULT_REGISTRATION__ONLY_INVITED=true
        """
        env_overrides = cls._parse_env_overrides(env_prefix)

        paths_kwargs: dict[str, Any] = {}
        for key in ("data_dir", "log_dir"):
            if f"paths.{key}" in env_overrides:
                paths_kwargs[key] = Path(env_overrides[f"paths.{key}"])

        security_kwargs: dict[str, Any] = {}
        for key in (
            "argon2_memory_cost",
            "argon2_time_cost",
            "argon2_parallelism",
            "session_ttl_seconds",
            "session_max_lifetime_seconds",
            "confirmation_token_ttl_seconds",
            "csrf_token_ttl_seconds",
            "min_password_length",
            "max_password_length",
        ):
            if f"security.{key}" in env_overrides:
                security_kwargs[key] = int(env_overrides[f"security.{key}"])

        database_kwargs: dict[str, Any] = {}
        if "database.path" in env_overrides:
            database_kwargs["path"] = Path(env_overrides["database.path"])
        if "database.timeout_seconds" in env_overrides:
            database_kwargs["timeout_seconds"] = float(env_overrides["database.timeout_seconds"])

        registration_kwargs: dict[str, Any] = {}
        if "registration.only_invited" in env_overrides:
            registration_kwargs["only_invited"] = (
                env_overrides["registration.only_invited"].lower() == "true"
            )

        logging_kwargs: dict[str, Any] = {}
        if "logging.level" in env_overrides:
            logging_kwargs["level"] = env_overrides["logging.level"]
        for key in ("enable_console", "enable_file", "enable_json"):
            if f"logging.{key}" in env_overrides:
                logging_kwargs[key] = env_overrides[f"logging.{key}"].lower() == "true"

        # debug_mode cannot be overridden via env
        return cls(
            paths=PathConfig(**paths_kwargs) if paths_kwargs else None,
            security=SecurityConfig(**security_kwargs) if security_kwargs else None,
            database=DatabaseConfig(**database_kwargs) if database_kwargs else None,
            registration=RegistrationConfig(**registration_kwargs) if registration_kwargs else None,
            logging=LoggingConfig(**logging_kwargs) if logging_kwargs else None,
        )

    @staticmethod
    def _parse_env_overrides(prefix: str) -> dict[str, str]:
        """Parse environment variables with the given prefix."""
        overrides: dict[str, str] = {}
        prefix_upper = f"{prefix.upper()}_"

        for key, value in os.environ.items():
            if key.startswith(prefix_upper):
                # TEAMVAULT_SECTION__KEY -> section.key
                config_key = key[len(prefix_upper):].lower().replace("__", ".")

                if _is_sensitive_key(config_key):
                    continue

                overrides[config_key] = value

        return overrides

    @classmethod
    def get_instance(cls) -> ServerConfig:
        """Get or create the singleton configuration instance."""
        if cls._instance is None:
            cls._instance = cls.load()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance. Use only for testing."""
        cls._instance = None

    def ensure_directories(self) -> None:
        """Create all required directories with owner-only permissions."""
        import stat

        directories = [
            self._paths.data_dir,
            self._paths.log_dir,
            self.database_path.parent,
        ]

        for directory in directories:
            directory.mkdir(parents=True, exist_ok=True)

            if platform.system().lower() != "windows":
                directory.chmod(stat.S_IRWXU)  # 700

    def __repr__(self) -> str:
        return f"ServerConfig(hash={self._config_hash}, app={self._app.app_name})"

    def __setattr__(self, name: str, value: Any) -> None:
        """Prevent modification after initialization."""
        if hasattr(self, "_frozen") and self._frozen:
            raise AttributeError("ServerConfig is immutable after initialization")
        super().__setattr__(name, value)


class SecurityWarning(UserWarning):
    """Warning for security-related configuration issues."""
    pass
