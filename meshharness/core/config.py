import tempfile

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MAX_POLL_INTERVAL = 0.2


class HarnessSettings(BaseSettings):
    """Mesh harness configuration settings.

    Every field can be overridden from the environment with the
    ``MESHHARNESS_`` prefix, e.g. ``MESHHARNESS_READY_TIMEOUT=30``.
    """

    model_config = SettingsConfigDict(
        env_prefix="MESHHARNESS_", env_file=".env", extra="ignore"
    )

    daemon_command: list[str] = Field(
        default_factory=lambda: ["receptor"],
        description=(
            "Command (argv prefix) that starts one mesh daemon; "
            "'--config <path>' is appended."
        ),
    )
    daemon_log_level: str = Field(
        "info", description="Log level written into each generated node config."
    )
    base_temp_dir: str = Field(
        default_factory=tempfile.gettempdir,
        description="Directory under which per-test workspaces are created.",
    )
    startup_timeout: float = Field(
        10.0, description="Seconds to wait for a node's control socket to appear."
    )
    ready_timeout: float = Field(
        20.0, description="Default seconds to wait for mesh convergence."
    )
    poll_interval: float = Field(
        0.1, description="Interval in seconds between convergence/shutdown polls."
    )
    graceful_stop_timeout: float = Field(
        5.0, description="Seconds to wait after a graceful stop before killing."
    )
    shutdown_timeout: float = Field(
        10.0, description="Seconds to wait for node sockets to be released."
    )
    control_timeout: float = Field(
        10.0, description="Timeout in seconds for a single control-socket request."
    )
    work_poll_interval: float = Field(
        0.25, description="Interval in seconds between work status polls."
    )
    port_category: str = Field(
        "testing", description="Port allocator category for listener ports."
    )
    log_level: str = Field("INFO", description="Harness log level.")
    debug_scopes: list[str] = Field(
        default_factory=list,
        description="Modules whose DEBUG logs are emitted regardless of log_level.",
    )

    @field_validator("poll_interval")
    @classmethod
    def _cap_poll_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("poll_interval must be positive")
        return min(value, MAX_POLL_INTERVAL)

    @field_validator("daemon_command")
    @classmethod
    def _require_command(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("daemon_command must not be empty")
        return value
