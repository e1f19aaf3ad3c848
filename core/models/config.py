"""
Configuration models for code-link.

Handles watcher, connection and per-project sync settings, plus global
settings read from the environment.
"""

from pathlib import Path
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..sync.ports import port_for
from ..sync.hashing import shorten_id

FILES_DIR_NAME = "files"


class WatcherConfig(BaseModel):
    """Filesystem watcher configuration"""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True
    )

    # IO bounds
    read_timeout_s: float = Field(default=5.0, gt=0, le=120.0)
    write_timeout_s: float = Field(default=5.0, gt=0, le=120.0)

    # Shutdown
    shutdown_timeout_s: float = Field(default=3.0, gt=0, le=60.0)
    observer_join_timeout_s: float = Field(default=5.0, gt=0, le=60.0)

    # Echo windows
    rename_suppression_s: float = Field(default=2.0, ge=0, le=60.0)
    delete_marker_ttl_s: float = Field(default=5.0, gt=0, le=300.0)

    # Queue
    queue_max_size: int = Field(default=1000, ge=1, le=100000)

    # Initial scan emits add events for files already on disk
    initial_scan: bool = True


class RetryConfig(BaseModel):
    """Exponential backoff for outbound connection attempts"""
    model_config = ConfigDict(validate_assignment=True)

    max_attempts: int = Field(default=5, ge=1, le=100)
    initial_delay_s: float = Field(default=0.25, ge=0, le=30.0)
    max_delay_s: float = Field(default=5.0, ge=0, le=300.0)
    backoff_factor: float = Field(default=2.0, ge=1.0, le=10.0)

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)"""
        return min(self.initial_delay_s * (self.backoff_factor ** (attempt - 1)), self.max_delay_s)


class ConnectionConfig(BaseModel):
    """Transport and protocol configuration"""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True
    )

    host: str = "127.0.0.1"
    port: Optional[int] = Field(default=None, ge=1, le=65535)  # None: derived from the project id

    send_timeout_s: float = Field(default=5.0, gt=0, le=120.0)
    handshake_timeout_s: float = Field(default=10.0, gt=0, le=300.0)
    malformed_frame_threshold: int = Field(default=3, ge=1, le=1000)
    max_message_bytes: int = Field(default=16 * 1024 * 1024, ge=1024)

    pending_delete_timeout_s: float = Field(default=30.0, gt=0, le=3600.0)

    retry: RetryConfig = Field(default_factory=RetryConfig)

    @field_validator('host')
    @classmethod
    def validate_host(cls, v: str) -> str:
        if not v:
            raise ValueError('Host cannot be empty')
        return v


class SyncConfig(BaseModel):
    """Per-project sync configuration with validation"""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True
    )

    # Project identification
    project_id: str = Field(..., min_length=1)
    project_name: Optional[str] = None
    project_dir: Optional[Path] = None  # None: discover at handshake

    # Component configurations
    watcher: WatcherConfig = Field(default_factory=WatcherConfig)
    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)

    # Sync policy
    dangerously_auto_delete: bool = False
    detect_conflicts: bool = True
    prefer_remote: bool = False
    remote_drift_ms: int = Field(default=2000, ge=0, le=600000)

    @field_validator('project_dir')
    @classmethod
    def validate_project_dir(cls, v: Optional[Path]) -> Optional[Path]:
        """Resolve the project directory; it must not be a file"""
        if v is None:
            return None
        v = Path(v).expanduser()
        if v.exists() and not v.is_dir():
            raise ValueError(f'Project path is not a directory: {v}')
        return v.resolve()

    @field_validator('project_name')
    @classmethod
    def validate_project_name(cls, v: Optional[str]) -> Optional[str]:
        return v or None

    @property
    def short_id(self) -> str:
        return shorten_id(self.project_id)

    @property
    def port(self) -> int:
        """Configured port, or the one derived from the project id"""
        return self.connection.port or port_for(self.project_id)

    @property
    def files_dir(self) -> Optional[Path]:
        if self.project_dir is None:
            return None
        return self.project_dir / FILES_DIR_NAME

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        data = self.model_dump()
        if data["project_dir"] is not None:
            data["project_dir"] = str(data["project_dir"])
        return data


class GlobalSettings(BaseSettings):
    """Global application settings with environment variable support"""
    model_config = SettingsConfigDict(
        env_prefix="CODE_LINK_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Connection defaults
    default_host: str = "127.0.0.1"
    default_delete_timeout_s: float = Field(default=30.0, gt=0, le=3600.0)

    # Global directories
    global_config_dir: Path = Field(
        default_factory=lambda: Path.home() / ".code-link"
    )

    # Logging
    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    log_to_file: bool = False

    @field_validator('log_level', mode='before')
    @classmethod
    def normalize_log_level(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    def get_log_file(self) -> Optional[Path]:
        """Get log file path if logging to file is enabled"""
        if not self.log_to_file:
            return None
        log_dir = self.global_config_dir / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        return log_dir / "code-link.log"
