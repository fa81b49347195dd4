# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loading for quote-intake.

Settings come from an INI file (default ``config.ini``, overridden by the
``QI_CONFIG`` environment variable) with environment variables as fallbacks.
The fallback for option ``<option>`` of section ``<section>`` is
``QI_<SECTION>_<OPTION>`` upper-cased, dots replaced by underscores
(``[mail] smtp_password`` -> ``QI_MAIL_SMTP_PASSWORD``,
``[retention.uploads] days`` -> ``QI_RETENTION_UPLOADS_DAYS``).

The result is a single frozen :class:`IntakeConfig` built once at process
start and handed to every component; nothing reads settings from global
state afterwards.

Example:
    Configuration file format (config.ini)::

        [paths]
        base_dir = /var/www/site

        [rate_limit]
        max_requests = 3
        window_seconds = 3600
        whitelist = 127.0.0.1, ::1

        [mail]
        recipient = quotes@example.com
        sender = no-reply@example.com
        smtp_host = smtp.example.com
        smtp_port = 587

        [retention]
        min_free_space_mb = 100

        [retention.uploads]
        days = 7
        max_size_mb = 500

        [cities]
        vila velha = praia da costa, itaparica
"""

from __future__ import annotations

import configparser
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ConfigurationError
from .logger import get_logger
from .retention.policy import MIB, RetentionPolicy

logger = get_logger("ConfigLoader")

ENV_PREFIX = "QI_"
DEFAULT_CONFIG_FILE = "config.ini"

DEFAULT_ALLOWED_TYPES = (
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "video/mp4",
    "video/quicktime",
    "video/x-msvideo",
    "video/x-ms-wmv",
    "application/pdf",
)
DEFAULT_ALLOWED_EXTENSIONS = ("jpg", "jpeg", "png", "gif", "webp", "mp4", "mov", "avi", "wmv", "pdf")
DEFAULT_PROJECT_TYPES = (
    "reforma-completa",
    "reforma-parcial",
    "construcao",
    "manutencao",
    "servico-express",
    "outro",
)
DEFAULT_TEMP_EMAIL_DOMAINS = (
    "10minutemail.com",
    "tempmail.org",
    "guerrillamail.com",
    "mailinator.com",
    "throwaway.email",
)
DEFAULT_SPAM_WORDS = (
    "viagra",
    "casino",
    "lottery",
    "winner",
    "congratulations",
    "click here",
    "make money",
    "free money",
    "act now",
    "nigerian prince",
)
DEFAULT_CITY_LOOKUP: dict[str, tuple[str, ...]] = {
    "Vitória": ("vitoria", "vitória", "centro vitoria", "enseada", "praia do canto"),
    "Vila Velha": ("vila velha", "praia da costa", "itaparica", "itapua"),
    "Cariacica": ("cariacica", "campo grande", "itaciba"),
    "Serra": ("serra", "laranjeiras", "jacaraipe"),
    "Viana": ("viana",),
    "Guarapari": ("guarapari", "meaipe", "enseada azul"),
}

# name -> (days, max size MiB or None, purge pattern, rotate logs)
DEFAULT_RETENTION: dict[str, tuple[float, int | None, str, bool]] = {
    "uploads": (7, 500, "*", False),
    "logs": (30, 100, "*", True),
    "backups": (90, 1000, "**/*", False),
    "temp": (1, None, "*", False),
    "cache": (7, 200, "**/*", False),
}


@dataclass(frozen=True)
class PathsConfig:
    """Managed directories. Relative values are resolved against ``base_dir``."""

    base_dir: Path = Path(".")
    uploads_dir: Path = Path("uploads")
    logs_dir: Path = Path("logs")
    backups_dir: Path = Path("backups")
    temp_dir: Path = Path("temp")
    cache_dir: Path = Path("cache")
    rate_limit_db: Path = Path("state/rate_limit.db")

    def directory(self, name: str) -> Path | None:
        return {
            "uploads": self.uploads_dir,
            "logs": self.logs_dir,
            "backups": self.backups_dir,
            "temp": self.temp_dir,
            "cache": self.cache_dir,
        }.get(name)


@dataclass(frozen=True)
class RateLimitConfig:
    enabled: bool = True
    window_seconds: int = 3600
    max_requests: int = 3
    whitelist: frozenset[str] = frozenset({"127.0.0.1", "::1"})
    blocked: frozenset[str] = frozenset()


@dataclass(frozen=True)
class UploadConfig:
    max_file_size: int = 10 * MIB
    max_files: int = 5
    allowed_types: tuple[str, ...] = DEFAULT_ALLOWED_TYPES
    allowed_extensions: tuple[str, ...] = DEFAULT_ALLOWED_EXTENSIONS
    name_prefix: str = "rc_"
    max_basename_length: int = 50


@dataclass(frozen=True)
class MailConfig:
    recipient: str | None = None
    sender: str | None = None
    sender_name: str = "Quote Requests"
    admin_email: str | None = None
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    use_tls: bool = False
    start_tls: bool = True
    timeout: float = 10.0


@dataclass(frozen=True)
class NotificationConfig:
    webhook_url: str | None = None
    webhook_secret: str | None = None
    threshold_bytes: int = 50 * MIB
    notify_submissions: bool = True


@dataclass(frozen=True)
class RetentionConfig:
    min_free_bytes: int = 100 * MIB
    max_files_per_run: int = 1000
    policies: tuple[RetentionPolicy, ...] = ()


@dataclass(frozen=True)
class SubmissionConfig:
    backup_emails: bool = True
    project_types: tuple[str, ...] = DEFAULT_PROJECT_TYPES
    default_city: str = "Grande Vitória"
    city_lookup: Mapping[str, tuple[str, ...]] = field(default_factory=lambda: dict(DEFAULT_CITY_LOOKUP))
    success_url: str = "/obrigado.html"
    error_url: str = "/orcamento.html"
    trust_forwarded_for: bool = False


@dataclass(frozen=True)
class AntiSpamConfig:
    blocked_emails: frozenset[str] = frozenset()
    temp_email_domains: frozenset[str] = frozenset(DEFAULT_TEMP_EMAIL_DOMAINS)
    spam_words: tuple[str, ...] = DEFAULT_SPAM_WORDS


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    file: Path | None = None


@dataclass(frozen=True)
class IntakeConfig:
    """Complete, immutable configuration of one process."""

    paths: PathsConfig = field(default_factory=PathsConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    uploads: UploadConfig = field(default_factory=UploadConfig)
    mail: MailConfig = field(default_factory=MailConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    submission: SubmissionConfig = field(default_factory=SubmissionConfig)
    antispam: AntiSpamConfig = field(default_factory=AntiSpamConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def require_mail(self) -> None:
        """Raise :class:`ConfigurationError` unless mail delivery is configured."""
        missing = [name for name in ("recipient", "sender") if not getattr(self.mail, name)]
        if missing:
            raise ConfigurationError(f"Missing [mail] settings: {', '.join(missing)}")


class _Settings:
    """INI lookups with ``QI_*`` environment fallbacks and typed conversion."""

    def __init__(self, parser: configparser.ConfigParser, environ: Mapping[str, str]):
        self.parser = parser
        self.environ = environ

    @staticmethod
    def env_name(section: str, option: str) -> str:
        return f"{ENV_PREFIX}{section}_{option}".replace(".", "_").replace("-", "_").upper()

    def get(self, section: str, option: str, default: str | None = None) -> str | None:
        if self.parser.has_option(section, option):
            return self.parser.get(section, option)
        return self.environ.get(self.env_name(section, option), default)

    def get_str(self, section: str, option: str, default: str | None = None) -> str | None:
        value = self.get(section, option)
        if value is None:
            return default
        value = value.strip()
        return value or default

    def get_int(self, section: str, option: str, default: int, minimum: int | None = None) -> int:
        value = self.get(section, option)
        if value is None or not value.strip():
            return default
        try:
            result = int(value)
        except ValueError:
            raise ConfigurationError(f"[{section}] {option}: expected an integer, got {value!r}") from None
        if minimum is not None and result < minimum:
            raise ConfigurationError(f"[{section}] {option}: must be >= {minimum}, got {result}")
        return result

    def get_float(self, section: str, option: str, default: float, minimum: float | None = None) -> float:
        value = self.get(section, option)
        if value is None or not value.strip():
            return default
        try:
            result = float(value)
        except ValueError:
            raise ConfigurationError(f"[{section}] {option}: expected a number, got {value!r}") from None
        if minimum is not None and result < minimum:
            raise ConfigurationError(f"[{section}] {option}: must be >= {minimum}, got {result}")
        return result

    def get_bool(self, section: str, option: str, default: bool) -> bool:
        value = self.get(section, option)
        if value is None or not value.strip():
            return default
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        raise ConfigurationError(f"[{section}] {option}: expected a boolean, got {value!r}")

    def get_list(self, section: str, option: str, default: tuple[str, ...]) -> tuple[str, ...]:
        value = self.get(section, option)
        if value is None:
            return default
        return tuple(item.strip() for item in value.split(",") if item.strip())


def _resolve(base_dir: Path, value: Path) -> Path:
    return value if value.is_absolute() else base_dir / value


def _load_paths(s: _Settings) -> PathsConfig:
    base_dir = Path(os.path.expanduser(s.get_str("paths", "base_dir", ".") or "."))
    defaults = PathsConfig()

    def path(option: str) -> Path:
        raw = s.get_str("paths", option)
        value = Path(os.path.expanduser(raw)) if raw else getattr(defaults, option)
        return _resolve(base_dir, value)

    return PathsConfig(
        base_dir=base_dir,
        uploads_dir=path("uploads_dir"),
        logs_dir=path("logs_dir"),
        backups_dir=path("backups_dir"),
        temp_dir=path("temp_dir"),
        cache_dir=path("cache_dir"),
        rate_limit_db=path("rate_limit_db"),
    )


def _load_policies(
    s: _Settings, parser: configparser.ConfigParser, paths: PathsConfig, max_files_per_run: int
) -> tuple[RetentionPolicy, ...]:
    names = list(DEFAULT_RETENTION)
    for section in parser.sections():
        if section.startswith("retention.") and section[len("retention."):] not in names:
            names.append(section[len("retention."):])

    policies = []
    for name in names:
        section = f"retention.{name}"
        days, max_mb, pattern, rotate = DEFAULT_RETENTION.get(name, (30, None, "*", False))
        raw_dir = s.get_str(section, "directory")
        if raw_dir:
            directory = _resolve(paths.base_dir, Path(os.path.expanduser(raw_dir)))
        else:
            directory = paths.directory(name)
        if directory is None:
            raise ConfigurationError(f"[{section}] directory is required for custom retention policies")

        size_mb = s.get_float(section, "max_size_mb", float(max_mb) if max_mb is not None else 0.0, minimum=0)
        try:
            policies.append(
                RetentionPolicy(
                    name=name,
                    directory=directory,
                    age_threshold_days=s.get_float(section, "days", float(days), minimum=0),
                    max_size_bytes=int(size_mb * MIB) if size_mb > 0 else None,
                    max_files_per_run=s.get_int(section, "max_files_per_run", max_files_per_run, minimum=1),
                    enabled=s.get_bool(section, "enabled", True),
                    pattern=s.get_str(section, "pattern", pattern) or pattern,
                    rotate_logs=s.get_bool(section, "rotate_logs", rotate),
                    log_pattern=s.get_str(section, "log_pattern", "*.log") or "*.log",
                    log_max_lines=s.get_int(section, "max_lines", 5000, minimum=1),
                )
            )
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
    return tuple(policies)


def _check_state_location(paths: PathsConfig, policies: tuple[RetentionPolicy, ...]) -> None:
    """Reject layouts where a retention policy could delete the rate-limit store."""
    db_path = Path(os.path.abspath(paths.rate_limit_db))
    for policy in policies:
        if db_path.is_relative_to(os.path.abspath(policy.directory)):
            raise ConfigurationError(
                f"[paths] rate_limit_db {paths.rate_limit_db} lies inside the "
                f"'{policy.name}' retention directory {policy.directory}"
            )


def _load_city_lookup(parser: configparser.ConfigParser) -> dict[str, tuple[str, ...]]:
    if not parser.has_section("cities"):
        return dict(DEFAULT_CITY_LOOKUP)
    lookup = {}
    for city, neighbourhoods in parser.items("cities"):
        terms = tuple(term.strip().lower() for term in neighbourhoods.split(",") if term.strip())
        lookup[city.strip().title()] = terms or (city.strip().lower(),)
    return lookup


def load_config(
    config_path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> IntakeConfig:
    """Build the process configuration.

    Args:
        config_path: INI file to read. When omitted, ``QI_CONFIG`` or
            ``config.ini`` is used.
        environ: Environment mapping, ``os.environ`` by default.

    Returns:
        The frozen configuration.

    Raises:
        ConfigurationError: If an explicitly requested file does not exist
            or a value cannot be converted, or when ``rate_limit_db`` lies
            inside a retention-managed directory.
    """
    environ = os.environ if environ is None else environ
    explicit = config_path is not None or "QI_CONFIG" in environ
    path = Path(config_path or environ.get("QI_CONFIG", DEFAULT_CONFIG_FILE))

    parser = configparser.ConfigParser(interpolation=None)
    if path.exists():
        try:
            parser.read(path, encoding="utf-8")
        except configparser.Error as exc:
            raise ConfigurationError(f"Cannot parse {path}: {exc}") from exc
    elif explicit:
        raise ConfigurationError(f"Config file not found: {path}")
    else:
        logger.info("No %s found, using defaults and environment", path)

    s = _Settings(parser, environ)
    paths = _load_paths(s)

    rate_limit = RateLimitConfig(
        enabled=s.get_bool("rate_limit", "enabled", True),
        window_seconds=s.get_int("rate_limit", "window_seconds", 3600, minimum=1),
        max_requests=s.get_int("rate_limit", "max_requests", 3, minimum=1),
        whitelist=frozenset(s.get_list("rate_limit", "whitelist", ("127.0.0.1", "::1"))),
        blocked=frozenset(s.get_list("rate_limit", "blocked", ())),
    )

    uploads = UploadConfig(
        max_file_size=int(s.get_float("uploads", "max_file_size_mb", 10, minimum=0) * MIB),
        max_files=s.get_int("uploads", "max_files", 5, minimum=0),
        allowed_types=tuple(t.lower() for t in s.get_list("uploads", "allowed_types", DEFAULT_ALLOWED_TYPES)),
        allowed_extensions=tuple(
            e.lower().lstrip(".") for e in s.get_list("uploads", "allowed_extensions", DEFAULT_ALLOWED_EXTENSIONS)
        ),
        name_prefix=s.get_str("uploads", "name_prefix", "rc_") or "",
        max_basename_length=s.get_int("uploads", "max_basename_length", 50, minimum=1),
    )

    mail = MailConfig(
        recipient=s.get_str("mail", "recipient"),
        sender=s.get_str("mail", "sender"),
        sender_name=s.get_str("mail", "sender_name", "Quote Requests") or "Quote Requests",
        admin_email=s.get_str("mail", "admin_email"),
        smtp_host=s.get_str("mail", "smtp_host", "localhost") or "localhost",
        smtp_port=s.get_int("mail", "smtp_port", 587, minimum=1),
        smtp_user=s.get_str("mail", "smtp_user"),
        smtp_password=s.get_str("mail", "smtp_password"),
        use_tls=s.get_bool("mail", "use_tls", False),
        start_tls=s.get_bool("mail", "start_tls", True),
        timeout=s.get_float("mail", "timeout", 10.0, minimum=0),
    )

    notifications = NotificationConfig(
        webhook_url=s.get_str("notifications", "webhook_url"),
        webhook_secret=s.get_str("notifications", "webhook_secret"),
        threshold_bytes=int(s.get_float("notifications", "notification_threshold_mb", 50, minimum=0) * MIB),
        notify_submissions=s.get_bool("notifications", "notify_submissions", True),
    )

    max_files_per_run = s.get_int("retention", "max_files_per_run", 1000, minimum=1)
    retention = RetentionConfig(
        min_free_bytes=int(s.get_float("retention", "min_free_space_mb", 100, minimum=0) * MIB),
        max_files_per_run=max_files_per_run,
        policies=_load_policies(s, parser, paths, max_files_per_run),
    )
    _check_state_location(paths, retention.policies)

    submission = SubmissionConfig(
        backup_emails=s.get_bool("submission", "backup_emails", True),
        project_types=s.get_list("submission", "project_types", DEFAULT_PROJECT_TYPES),
        default_city=s.get_str("submission", "default_city", "Grande Vitória") or "Grande Vitória",
        city_lookup=_load_city_lookup(parser),
        success_url=s.get_str("submission", "success_url", "/obrigado.html") or "/obrigado.html",
        error_url=s.get_str("submission", "error_url", "/orcamento.html") or "/orcamento.html",
        trust_forwarded_for=s.get_bool("submission", "trust_forwarded_for", False),
    )

    antispam = AntiSpamConfig(
        blocked_emails=frozenset(e.lower() for e in s.get_list("antispam", "blocked_emails", ())),
        temp_email_domains=frozenset(
            d.lower() for d in s.get_list("antispam", "temp_email_domains", DEFAULT_TEMP_EMAIL_DOMAINS)
        ),
        spam_words=tuple(w.lower() for w in s.get_list("antispam", "spam_words", DEFAULT_SPAM_WORDS)),
    )

    log_file = s.get_str("logging", "file")
    logging_config = LoggingConfig(
        level=(s.get_str("logging", "level", "INFO") or "INFO").upper(),
        file=_resolve(paths.base_dir, Path(log_file)) if log_file else None,
    )

    return IntakeConfig(
        paths=paths,
        rate_limit=rate_limit,
        uploads=uploads,
        mail=mail,
        notifications=notifications,
        retention=retention,
        submission=submission,
        antispam=antispam,
        logging=logging_config,
    )
