"""Configuration system for stall-profiler."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit


@dataclass
class ArtifactsConfig:
    """Where captured CPU profiles are written."""

    directory: str = ""  # Empty means the system temp directory
    prefix: str = "exthost"
    extension: str = ".cpuprofile"

    @property
    def path(self) -> Path | None:
        """Artifact directory, or None for the system temp directory."""
        return Path(self.directory).expanduser() if self.directory else None


@dataclass
class AlertsConfig:
    """User-facing prompt configuration."""

    enabled: bool = True
    sound: bool = True
    prompt_timeout: int = 120  # Seconds before an unanswered prompt is dismissed


@dataclass
class TelemetryConfig:
    """Diagnostic event recording."""

    enabled: bool = True
    retention_days: int = 30


@dataclass
class SystemConfig:
    """Logging configuration."""

    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


def _load_section(section_cls: type, data: dict):
    """Build a section dataclass from TOML data, using dataclass defaults for missing fields."""
    defaults = section_cls()
    return section_cls(
        **{f.name: data.get(f.name, getattr(defaults, f.name)) for f in fields(section_cls)}
    )


@dataclass
class Config:
    """Main configuration container."""

    artifacts: ArtifactsConfig = field(default_factory=ArtifactsConfig)
    alerts: AlertsConfig = field(default_factory=AlertsConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
    system: SystemConfig = field(default_factory=SystemConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "stall-profiler"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def data_dir(self) -> Path:
        """Data directory."""
        return Path.home() / ".local" / "share" / "stall-profiler"

    @property
    def state_dir(self) -> Path:
        """State directory for logs."""
        return Path.home() / ".local" / "state" / "stall-profiler"

    @property
    def db_path(self) -> Path:
        """Diagnostic events database path."""
        return self.data_dir / "events.db"

    @property
    def log_path(self) -> Path:
        """Log file path."""
        return self.state_dir / "profiler.log"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ("artifacts", "alerts", "telemetry", "system"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values."""
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        config = cls(
            artifacts=_load_section(ArtifactsConfig, data.get("artifacts", {})),
            alerts=_load_section(AlertsConfig, data.get("alerts", {})),
            telemetry=_load_section(TelemetryConfig, data.get("telemetry", {})),
            system=_load_section(SystemConfig, data.get("system", {})),
        )
        _validate(config)
        return config


def _validate(config: Config) -> None:
    if config.telemetry.retention_days < 1:
        raise ValueError(
            f"telemetry.retention_days must be >= 1, got {config.telemetry.retention_days}"
        )
    if config.alerts.prompt_timeout < 1:
        raise ValueError(f"alerts.prompt_timeout must be >= 1, got {config.alerts.prompt_timeout}")
    if not config.artifacts.extension.startswith("."):
        raise ValueError(
            f"artifacts.extension must start with '.', got {config.artifacts.extension!r}"
        )
