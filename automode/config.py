"""
Config - Einstellungen der Auto-Mode Engine aus Environment-Variablen.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}") from None


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class AutoModeSettings:
    """Alle Engine-Einstellungen. Zeiten in Sekunden, 0 = kein Limit."""
    data_dir: Path = field(default_factory=lambda: Path.home() / ".automode")
    default_max_concurrency: int = 3
    poll_interval: float = 2.0
    idle_interval: float = 10.0
    phase_timeout: float = 1800.0
    approval_timeout: float = 1800.0
    skip_verification_in_auto_mode: bool = False
    playwright_verification: bool = False
    default_model: str = "claude-sonnet-4-5"
    failure_threshold: int = 3
    failure_window: float = 60.0
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000
    # Auto-Reload des Servers, nur für die Entwicklung
    reload: bool = False

    @property
    def state_file(self) -> Path:
        return self.data_dir / "execution-state.json"

    @classmethod
    def from_env(cls) -> "AutoModeSettings":
        """Liest AUTOMODE_* Variablen. Ungültige Zahlen werfen ValueError."""
        data_dir = os.getenv("AUTOMODE_DATA_DIR")
        settings = cls(
            data_dir=Path(data_dir).expanduser() if data_dir else Path.home() / ".automode",
            default_max_concurrency=_env_int("AUTOMODE_MAX_CONCURRENCY", 3),
            poll_interval=_env_float("AUTOMODE_POLL_INTERVAL", 2.0),
            idle_interval=_env_float("AUTOMODE_IDLE_INTERVAL", 10.0),
            phase_timeout=_env_float("AUTOMODE_PHASE_TIMEOUT", 1800.0),
            approval_timeout=_env_float("AUTOMODE_APPROVAL_TIMEOUT", 1800.0),
            skip_verification_in_auto_mode=_env_bool("AUTOMODE_SKIP_VERIFICATION", False),
            playwright_verification=_env_bool("AUTOMODE_PLAYWRIGHT_VERIFICATION", False),
            default_model=os.getenv("AUTOMODE_DEFAULT_MODEL", "claude-sonnet-4-5"),
            failure_threshold=_env_int("AUTOMODE_FAILURE_THRESHOLD", 3),
            failure_window=_env_float("AUTOMODE_FAILURE_WINDOW", 60.0),
            log_level=os.getenv("AUTOMODE_LOG_LEVEL", "INFO"),
            host=os.getenv("AUTOMODE_HOST", "0.0.0.0"),
            port=_env_int("AUTOMODE_PORT", 8000),
            reload=_env_bool("AUTOMODE_RELOAD", False),
        )
        if settings.default_max_concurrency < 1:
            raise ValueError("AUTOMODE_MAX_CONCURRENCY must be >= 1")
        return settings
