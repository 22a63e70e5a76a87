"""
CV Follow-up Mailer -- Configuration Module

Centralizes all configuration for the follow-up email queue.
Loads defaults from dataclasses, overlays any overrides from config.yaml,
then applies environment variables (which win).

Usage:
    from followup.config import get_config
    cfg = get_config()                         # loads config.yaml if present
    cfg = get_config("path/to/custom.yaml")    # loads a specific file
    print(cfg.queue.max_attempts)              # 3
    print(cfg.scheduler.interval_ms)           # 900000
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from .errors import ConfigError

# ---------------------------------------------------------------------------
# Path constants -- everything relative to the project root
# ---------------------------------------------------------------------------
_THIS_DIR = Path(__file__).resolve().parent          # followup/
PROJECT_ROOT = _THIS_DIR.parent                       # repository root
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"

SUPPORTED_PROVIDERS = ("smtp", "sendgrid")


def _resolve(rel_path: str) -> Path:
    p = Path(rel_path)
    if not p.is_absolute():
        p = PROJECT_ROOT / p
    return p


# ===================================================================
# 1. Scheduler
# ===================================================================

@dataclass
class SchedulerSettings:
    """How often the queue processor runs."""
    interval_ms: int = 15 * 60 * 1000       # 15 minutes


# ===================================================================
# 2. Queue Processing
# ===================================================================

@dataclass
class QueueSettings:
    """Retry and batching limits for a processing cycle."""
    max_attempts: int = 3
    batch_size: int = 50
    retry_delay_minutes: int = 30           # backoff before the next attempt
    email_delay_hours: int = 24             # submission -> first send
    claim_lease_minutes: int = 15           # in-flight entries leave the due set this long


# ===================================================================
# 3. SMTP Settings
# ===================================================================

@dataclass
class SMTPSettings:
    """SMTP delivery settings.

    ``provider`` is either ``smtp`` (any relay, credentials optional) or
    ``sendgrid`` (SendGrid SMTP relay, ``api_key`` required).
    """
    provider: str = "smtp"
    host: str = "localhost"
    port: int = 587
    use_tls: bool = True                    # STARTTLS after connect
    use_ssl: bool = False                   # implicit TLS (port 465)
    username: str = ""
    password: str = ""
    api_key: str = ""
    timeout_seconds: float = 30.0


# ===================================================================
# 4. Sender Info
# ===================================================================

@dataclass
class SenderInfo:
    """Default FROM identity for outgoing follow-up emails."""
    name: str = "SkillTude Team"
    email: str = "noreply@skilltude.com"
    website: str = "https://www.skilltude.com"

    @property
    def formatted(self) -> str:
        return f"{self.name} <{self.email}>"


# ===================================================================
# 5. Template Paths
# ===================================================================

@dataclass
class TemplatePaths:
    """Where the Jinja2 email templates live."""
    template_dir: str = str(_THIS_DIR / "templates")
    html_template: str = "cv_analysis.html"
    text_template: str = "cv_analysis.txt"

    @property
    def resolved_dir(self) -> Path:
        return _resolve(self.template_dir)


# ===================================================================
# 6. Database
# ===================================================================

@dataclass
class DatabaseSettings:
    """Location of the SQLite submission store."""
    path: str = "data/submissions.db"

    @property
    def resolved_path(self) -> Path:
        return _resolve(self.path)


# ===================================================================
# 7. Output
# ===================================================================

@dataclass
class OutputConfig:
    """Log file location.  Empty string disables the file handler."""
    log_file: str = "output/followup.log"

    @property
    def resolved_log_file(self) -> Optional[Path]:
        if not self.log_file:
            return None
        return _resolve(self.log_file)


# ===================================================================
# Master Config
# ===================================================================

@dataclass
class FollowupConfig:
    """Top-level configuration container for the follow-up mailer."""
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    smtp: SMTPSettings = field(default_factory=SMTPSettings)
    sender: SenderInfo = field(default_factory=SenderInfo)
    templates: TemplatePaths = field(default_factory=TemplatePaths)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    output: OutputConfig = field(default_factory=OutputConfig)


# ===================================================================
# Value Conversion
# ===================================================================

_CONVERTERS = {"int": int, "float": float, "str": str}


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _convert_value(value: Any, type_name: str, label: str) -> Any:
    """Coerce a YAML or environment value to a settings field's type.

    Raises:
        ConfigError: If the value cannot be converted.
    """
    if type_name == "bool":
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return _parse_bool(value)
        raise ConfigError(f"{label} must be bool, got {value!r}")

    conv = _CONVERTERS.get(type_name)
    if conv is None:
        return value
    if conv is str:
        return "" if value is None else str(value)
    if value is None or isinstance(value, bool):
        raise ConfigError(f"{label} must be {type_name}, got {value!r}")
    try:
        return conv(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{label} must be {type_name}, got {value!r}") from exc


# ===================================================================
# YAML Loading
# ===================================================================

def _apply_yaml_to_config(cfg: FollowupConfig, data: dict) -> None:
    """Apply a parsed YAML dict onto a FollowupConfig instance."""
    _section_map = {
        "scheduler": cfg.scheduler,
        "queue": cfg.queue,
        "smtp": cfg.smtp,
        "sender": cfg.sender,
        "templates": cfg.templates,
        "database": cfg.database,
        "output": cfg.output,
    }

    for section_key, section_obj in _section_map.items():
        if section_key in data and isinstance(data[section_key], dict):
            field_types = {f.name: f.type for f in fields(section_obj)}
            for attr, val in data[section_key].items():
                if attr in field_types:
                    value = _convert_value(val, field_types[attr], f"{section_key}.{attr}")
                    setattr(section_obj, attr, value)


# ===================================================================
# Environment Overrides
# ===================================================================

# env var -> (section, attribute, converter)
_ENV_OVERRIDES: dict[str, tuple[str, str, type]] = {
    "EMAIL_QUEUE_INTERVAL_MS": ("scheduler", "interval_ms", int),
    "EMAIL_MAX_ATTEMPTS": ("queue", "max_attempts", int),
    "EMAIL_BATCH_SIZE": ("queue", "batch_size", int),
    "EMAIL_RETRY_DELAY_MINUTES": ("queue", "retry_delay_minutes", int),
    "EMAIL_DELAY_HOURS": ("queue", "email_delay_hours", int),
    "EMAIL_CLAIM_LEASE_MINUTES": ("queue", "claim_lease_minutes", int),
    "EMAIL_PROVIDER": ("smtp", "provider", str),
    "SMTP_HOST": ("smtp", "host", str),
    "SMTP_PORT": ("smtp", "port", int),
    "SMTP_SECURE": ("smtp", "use_ssl", bool),
    "SMTP_USER": ("smtp", "username", str),
    "SMTP_PASS": ("smtp", "password", str),
    "EMAIL_API_KEY": ("smtp", "api_key", str),
    "EMAIL_FROM_ADDRESS": ("sender", "email", str),
    "EMAIL_FROM_NAME": ("sender", "name", str),
    "SUBMISSIONS_DB_PATH": ("database", "path", str),
}


def _apply_env_to_config(cfg: FollowupConfig, environ: Mapping[str, str]) -> None:
    """Overlay environment variables onto the config."""
    for var, (section, attr, conv) in _ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        value = _convert_value(raw, conv.__name__, var)
        setattr(getattr(cfg, section), attr, value)


def get_config(
    yaml_path: Optional[str | Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> FollowupConfig:
    """Build a FollowupConfig from defaults, YAML and environment.

    Args:
        yaml_path: Path to a config.yaml file.  If None, looks for the
                   default config.yaml at the project root.  If that file
                   doesn't exist, YAML overlay is skipped.
        environ: Mapping to read overrides from.  Defaults to os.environ.

    Returns:
        Fully populated FollowupConfig instance.  Not validated; call
        validate_config() before starting the scheduler.
    """
    cfg = FollowupConfig()

    path = Path(yaml_path) if yaml_path else DEFAULT_CONFIG_PATH
    if yaml_path and not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config file must contain a mapping: {path}")
        _apply_yaml_to_config(cfg, data)

    _apply_env_to_config(cfg, os.environ if environ is None else environ)
    return cfg


# ===================================================================
# Validation
# ===================================================================

def validate_config(cfg: FollowupConfig, require_transport: bool = True) -> None:
    """Fail fast on configuration the queue cannot run with.

    Raises:
        ConfigError: listing every problem found.
    """
    problems: list[str] = []

    if cfg.scheduler.interval_ms <= 0:
        problems.append("scheduler.interval_ms must be positive")
    if cfg.queue.max_attempts <= 0:
        problems.append("queue.max_attempts must be positive")
    if cfg.queue.batch_size <= 0:
        problems.append("queue.batch_size must be positive")
    if cfg.queue.retry_delay_minutes < 0:
        problems.append("queue.retry_delay_minutes must not be negative")
    if cfg.queue.email_delay_hours < 0:
        problems.append("queue.email_delay_hours must not be negative")
    if cfg.queue.claim_lease_minutes <= 0:
        problems.append("queue.claim_lease_minutes must be positive")

    if require_transport:
        smtp = cfg.smtp
        if smtp.provider not in SUPPORTED_PROVIDERS:
            problems.append(
                f"smtp.provider must be one of {', '.join(SUPPORTED_PROVIDERS)}, "
                f"got {smtp.provider!r}"
            )
        elif smtp.provider == "sendgrid" and not smtp.api_key:
            problems.append("EMAIL_API_KEY is required for the sendgrid provider")
        elif smtp.provider == "smtp":
            if not smtp.host:
                problems.append("SMTP_HOST is required for the smtp provider")
            if smtp.username and not smtp.password:
                problems.append("SMTP_PASS is required when SMTP_USER is set")
        if not cfg.sender.email:
            problems.append("EMAIL_FROM_ADDRESS is required")

    if problems:
        raise ConfigError("Invalid configuration: " + "; ".join(problems))
