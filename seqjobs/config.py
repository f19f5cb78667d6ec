"""
Configuration management for seqjobs.

Loads worker settings from $SEQJOBS_HOME/config.yaml (default
~/.config/seqjobs). A missing file means all defaults. Environment variables
override the file, and an optional env_file is loaded first with
python-dotenv so those overrides can live next to the config.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from seqjobs.errors import ConfigError
from seqjobs.schemas import Tool


# Per-tool wall-clock budgets (seconds) and the cap none may exceed
DEFAULT_TIMEOUTS: dict[Tool, float] = {
    Tool.XTREE: 30 * 60,
    Tool.MAGUS: 60 * 60,
}
ABSOLUTE_MAX_RUNTIME = 4 * 60 * 60

# Upload limits (bytes) applied at submission
UPLOAD_LIMITS: dict[Tool, int] = {
    Tool.XTREE: 500 * 1024 * 1024,
    Tool.MAGUS: 200 * 1024 * 1024,
}
ABSOLUTE_MAX_UPLOAD = 1024 * 1024 * 1024

EXECUTION_MODES = ("real", "stub")


def get_seqjobs_home() -> Path:
    """Config directory, overridable with SEQJOBS_HOME."""
    env_home = os.environ.get("SEQJOBS_HOME")
    if env_home:
        return Path(env_home).expanduser()
    return Path("~/.config/seqjobs").expanduser()


@dataclass
class SmtpSettings:
    """SMTP transport for completion emails."""
    host: Optional[str] = None
    port: int = 587
    user: Optional[str] = None
    password: Optional[str] = None
    secure: bool = False
    sender: Optional[str] = None

    @property
    def configured(self) -> bool:
        return bool(self.host and self.user and self.password)

    @classmethod
    def from_env(cls, base: Optional[dict[str, Any]] = None) -> "SmtpSettings":
        """Build from an optional config section, then EMAIL_* variables."""
        base = base or {}
        port = os.environ.get("EMAIL_PORT", base.get("port", 587))
        secure = os.environ.get("EMAIL_SECURE")
        try:
            port = int(port)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid EMAIL_PORT: {port!r}") from e
        return cls(
            host=os.environ.get("EMAIL_HOST", base.get("host")),
            port=port,
            user=os.environ.get("EMAIL_USER", base.get("user")),
            password=os.environ.get("EMAIL_PASS", base.get("password")),
            secure=(secure == "true") if secure is not None else bool(base.get("secure", False)),
            sender=os.environ.get("EMAIL_FROM", base.get("sender")),
        )


@dataclass
class WorkerConfig:
    """
    Settings for the worker, the submission path and the CLI.

    Attributes:
        jobs_dir: Root of job directories and the queue file
        lock_path: Execution lock token
        execution_mode: "real" runs binaries, "stub" simulates them
        poll_interval: Seconds to sleep when the queue is empty
        cleanup_interval: Seconds between retention sweeps
        retention_hours: Job directories older than this are purged
        stale_after_hours: Running jobs claimed longer ago are flagged stale
        magus_path: MAGUS executable
        xtree_path: XTree executable
        timeouts: Per-tool wall-clock budget in seconds
        stub_delay: Override for simulated runtime in stub mode
        notifier: "log" or "smtp"
        smtp: SMTP settings
        log_level: Logging level
        log_file: Optional log file
        log_format: "structured" or "pretty"
    """
    jobs_dir: Path
    lock_path: Path
    execution_mode: str = "real"
    poll_interval: float = 2.0
    cleanup_interval: float = 60 * 60
    retention_hours: float = 7 * 24
    stale_after_hours: float = ABSOLUTE_MAX_RUNTIME / 3600 + 0.5
    magus_path: str = "magus"
    xtree_path: str = "xtree"
    timeouts: dict[Tool, float] = field(default_factory=lambda: dict(DEFAULT_TIMEOUTS))
    stub_delay: Optional[float] = None
    notifier: str = "log"
    smtp: SmtpSettings = field(default_factory=SmtpSettings)
    log_level: str = "INFO"
    log_file: Optional[Path] = None
    log_format: str = "pretty"

    @classmethod
    def defaults(cls, home: Optional[Path] = None) -> "WorkerConfig":
        home = home or get_seqjobs_home()
        return cls(jobs_dir=home / "jobs", lock_path=home / "tmp" / "jobs" / "job.lock")

    def timeout_for(self, tool: Tool) -> float:
        return self.timeouts[Tool(tool)]

    def validate(self) -> None:
        """
        Raises:
            ConfigError: On any invalid setting
        """
        if self.execution_mode not in EXECUTION_MODES:
            raise ConfigError(
                f"execution_mode must be one of {EXECUTION_MODES}, got {self.execution_mode!r}"
            )
        for name in ("poll_interval", "cleanup_interval", "retention_hours", "stale_after_hours"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        for tool, seconds in self.timeouts.items():
            if seconds <= 0:
                raise ConfigError(f"{tool.value} timeout must be positive")
            if seconds > ABSOLUTE_MAX_RUNTIME:
                raise ConfigError(
                    f"{tool.value} timeout {seconds:g}s exceeds absolute maximum {ABSOLUTE_MAX_RUNTIME}s"
                )
        if self.stale_after_hours * 3600 <= max(self.timeouts.values()):
            raise ConfigError("stale_after_hours must exceed the longest tool timeout")
        if self.notifier not in ("log", "smtp"):
            raise ConfigError(f"notifier must be 'log' or 'smtp', got {self.notifier!r}")
        if self.notifier == "smtp" and not self.smtp.configured:
            raise ConfigError("Email credentials are not configured")
        if self.log_format not in ("structured", "pretty"):
            raise ConfigError(f"log_format must be 'structured' or 'pretty', got {self.log_format!r}")


def _resolve_path(value: Any, base: Path) -> Path:
    path = Path(str(value)).expanduser()
    return path if path.is_absolute() else base / path


def _load_yaml(config_path: Path) -> dict[str, Any]:
    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax in {config_path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping")
    return data


def _parse_timeouts(data: Any) -> dict[Tool, float]:
    timeouts = dict(DEFAULT_TIMEOUTS)
    if data is None:
        return timeouts
    if not isinstance(data, dict):
        raise ConfigError("timeouts must be a mapping of tool to seconds")
    for name, seconds in data.items():
        try:
            timeouts[Tool(name)] = float(seconds)
        except ValueError as e:
            raise ConfigError(f"Invalid timeout entry {name}: {seconds!r}") from e
    return timeouts


def load_config(config_path: Optional[Path] = None) -> WorkerConfig:
    """
    Load worker configuration.

    Args:
        config_path: Explicit config file. Defaults to $SEQJOBS_HOME/config.yaml

    Returns:
        Validated WorkerConfig

    Raises:
        ConfigError: If the file is malformed or a value is invalid
        FileNotFoundError: If an explicit config_path does not exist
    """
    home = get_seqjobs_home()
    if config_path is not None:
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"seqjobs config not found at {config_path}")
    else:
        config_path = home / "config.yaml"

    data = _load_yaml(config_path) if config_path.exists() else {}
    base = config_path.parent

    env_file = data.get("env_file")
    if env_file:
        env_path = _resolve_path(env_file, base)
        if not env_path.exists():
            raise ConfigError(f"env_file not found: {env_path}")
        load_dotenv(env_path)
    elif (Path.cwd() / ".env").exists():
        load_dotenv(Path.cwd() / ".env")

    config = WorkerConfig.defaults(home)

    if "jobs_dir" in data:
        config.jobs_dir = _resolve_path(data["jobs_dir"], base)
    if "lock_path" in data:
        config.lock_path = _resolve_path(data["lock_path"], base)
    if "log_file" in data and data["log_file"]:
        config.log_file = _resolve_path(data["log_file"], base)

    try:
        for name in ("poll_interval", "cleanup_interval", "retention_hours", "stale_after_hours"):
            if name in data:
                setattr(config, name, float(data[name]))
        if data.get("stub_delay") is not None:
            config.stub_delay = float(data["stub_delay"])
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid numeric setting: {e}") from e

    for name in ("execution_mode", "magus_path", "xtree_path", "notifier", "log_level", "log_format"):
        if name in data:
            setattr(config, name, str(data[name]))

    config.timeouts = _parse_timeouts(data.get("timeouts"))
    config.smtp = SmtpSettings.from_env(data.get("smtp"))
    if "notifier" not in data and config.smtp.configured:
        config.notifier = "smtp"

    # Environment overrides
    if os.environ.get("SEQJOBS_JOBS_DIR"):
        config.jobs_dir = Path(os.environ["SEQJOBS_JOBS_DIR"]).expanduser()
    if os.environ.get("SEQJOBS_LOCK_PATH"):
        config.lock_path = Path(os.environ["SEQJOBS_LOCK_PATH"]).expanduser()
    if os.environ.get("SEQJOBS_EXECUTION_MODE"):
        config.execution_mode = os.environ["SEQJOBS_EXECUTION_MODE"]
    elif os.environ.get("USE_EXECUTION_STUBS") == "true":
        config.execution_mode = "stub"
    if os.environ.get("SEQJOBS_MAGUS_PATH"):
        config.magus_path = os.environ["SEQJOBS_MAGUS_PATH"]
    if os.environ.get("SEQJOBS_XTREE_PATH"):
        config.xtree_path = os.environ["SEQJOBS_XTREE_PATH"]
    if os.environ.get("SEQJOBS_LOG_LEVEL"):
        config.log_level = os.environ["SEQJOBS_LOG_LEVEL"]

    config.validate()
    return config
