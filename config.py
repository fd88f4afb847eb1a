"""
Caps configuration.

Settings come from environment variables and are grouped into dataclasses
per concern. ``from_env`` never raises: values that cannot be parsed fall
back to the default and are reported by ``validate`` alongside the other
problems, so the server can log every issue at once.
"""
import os
import sys
import logging
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)

LEDGER_BACKENDS = ("memory", "file", "postgres")
TRUTHY = ("1", "true", "yes", "on")


def _env_number(name: str, default, cast, problems: list):
    """Parse a numeric variable; unparseable values are noted in ``problems``."""
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        problems.append(f"{name} must be a number, got '{raw}'")
        return default


@dataclass
class EngineConfig:
    """How runs are executed and where their ledgers live."""
    ledger_backend: str
    ledger_dir: str
    default_timeout_seconds: float
    max_output_bytes: int
    playbook_dir: str
    shell: str
    parse_errors: list = field(default_factory=list, repr=False)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        problems: list = []
        return cls(
            ledger_backend=os.environ.get("CAPS_LEDGER_BACKEND", "memory").lower(),
            ledger_dir=os.environ.get("CAPS_LEDGER_DIR", "./ledger"),
            default_timeout_seconds=_env_number(
                "CAPS_DEFAULT_TIMEOUT_SECONDS", 300.0, float, problems
            ),
            max_output_bytes=_env_number(
                "CAPS_MAX_OUTPUT_BYTES", 1024 * 1024, int, problems
            ),
            playbook_dir=os.environ.get("CAPS_PLAYBOOK_DIR", ""),
            shell=os.environ.get("CAPS_SHELL", "/bin/sh"),
            parse_errors=problems,
        )

    def validate(self) -> list:
        errors = list(self.parse_errors)
        if self.ledger_backend not in LEDGER_BACKENDS:
            errors.append(
                f"CAPS_LEDGER_BACKEND must be one of {list(LEDGER_BACKENDS)}, "
                f"got '{self.ledger_backend}'"
            )
        elif self.ledger_backend == "file" and not self.ledger_dir:
            errors.append("CAPS_LEDGER_DIR is required for the file ledger")
        if self.default_timeout_seconds <= 0:
            errors.append("CAPS_DEFAULT_TIMEOUT_SECONDS must be positive")
        if self.max_output_bytes < 1024:
            errors.append("CAPS_MAX_OUTPUT_BYTES must be at least 1024")
        return errors


@dataclass
class DatabaseConfig:
    """Connection settings for the postgres ledger backend."""
    host: str
    port: int
    name: str
    user: str
    password: str
    parse_errors: list = field(default_factory=list, repr=False)

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        problems: list = []
        return cls(
            host=os.environ.get("DB_HOST", "localhost"),
            port=_env_number("DB_PORT", 5432, int, problems),
            name=os.environ.get("DB_NAME", "caps"),
            user=os.environ.get("PG_USER", ""),
            password=os.environ.get("PG_PASS", ""),
            parse_errors=problems,
        )

    def validate(self) -> list:
        errors = list(self.parse_errors)
        required = (
            ("DB_HOST", self.host),
            ("DB_NAME", self.name),
            ("PG_USER", self.user),
            ("PG_PASS", self.password),
        )
        errors.extend(f"{env} is required" for env, value in required if not value)
        return errors

    @property
    def is_configured(self) -> bool:
        return bool(self.user and self.password)


@dataclass
class AppConfig:
    """HTTP server and CLI settings."""
    port: int
    base_url: str
    debug: bool
    timezone: str
    parse_errors: list = field(default_factory=list, repr=False)

    @classmethod
    def from_env(cls) -> "AppConfig":
        problems: list = []
        return cls(
            port=_env_number("PORT", 5000, int, problems),
            base_url=os.environ.get("CAPS_BASE_URL", "http://localhost:5000"),
            debug=os.environ.get("DEBUG", "").strip().lower() in TRUTHY,
            timezone=os.environ.get("CAPS_TIMEZONE", "UTC"),
            parse_errors=problems,
        )

    def validate(self) -> list:
        errors = list(self.parse_errors)
        if not 1 <= self.port <= 65535:
            errors.append(f"PORT must be between 1 and 65535, got {self.port}")
        return errors


@dataclass
class Config:
    engine: EngineConfig = field(default_factory=EngineConfig.from_env)
    database: DatabaseConfig = field(default_factory=DatabaseConfig.from_env)
    app: AppConfig = field(default_factory=AppConfig.from_env)

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            engine=EngineConfig.from_env(),
            database=DatabaseConfig.from_env(),
            app=AppConfig.from_env(),
        )

    def validate(self, strict: bool = False) -> list:
        """
        Collect every configuration problem.

        Database settings are checked only for the postgres ledger, or
        always when ``strict`` is set.
        """
        errors = self.engine.validate() + self.app.validate()
        if strict or self.engine.ledger_backend == "postgres":
            errors += self.database.validate()
        return errors

    def validate_or_exit(self, strict: bool = False):
        """Log every problem and exit with status 1 if there are any."""
        errors = self.validate(strict=strict)
        if not errors:
            return
        logger.log(level=50, msg=f"Invalid configuration ({len(errors)} problem(s)):")
        for error in errors:
            logger.log(level=50, msg=f"  - {error}")
        sys.exit(1)

    def log_config(self):
        """Log the effective settings. Credentials are never logged."""
        lines = [f"Ledger: {self.engine.ledger_backend}"]
        if self.engine.ledger_backend == "file":
            lines.append(f"Ledger directory: {self.engine.ledger_dir}")
        elif self.engine.ledger_backend == "postgres":
            db = self.database
            lines.append(f"Ledger database: {db.host}:{db.port}/{db.name} as {db.user}")
        lines += [
            f"Default step timeout: {self.engine.default_timeout_seconds}s",
            f"Output cap: {self.engine.max_output_bytes} bytes",
            f"Playbook directory: {self.engine.playbook_dir or 'not set'}",
            f"Listening on port {self.app.port} ({self.app.base_url})",
            f"Timezone: {self.app.timezone}",
        ]
        for line in lines:
            logger.log(level=20, msg=line)


_config: Optional[Config] = None


def get_config() -> Config:
    """Process-wide configuration, read from the environment on first use."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def reload_config() -> Config:
    global _config
    _config = Config.from_env()
    return _config


class Constants:
    """HTTP status codes used by the API."""

    HTTP_OK = 200
    HTTP_CREATED = 201
    HTTP_ACCEPTED = 202
    HTTP_BAD_REQUEST = 400
    HTTP_NOT_FOUND = 404
    HTTP_CONFLICT = 409
    HTTP_INTERNAL_ERROR = 500
    HTTP_SERVICE_UNAVAILABLE = 503
