"""Configuration management using Pydantic settings."""

from pathlib import Path
from typing import List, Optional, TYPE_CHECKING

from pydantic_settings import BaseSettings, SettingsConfigDict


# Classification names accepted by `az vm install-patches`.
DEFAULT_WINDOWS_CLASSIFICATIONS = (
    "Critical,Security,UpdateRollup,FeaturePack,ServicePack,Definition,Tools,Updates"
)
DEFAULT_LINUX_CLASSIFICATIONS = "Critical,Security,Other"


class Settings(BaseSettings):
    """Console settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PATCHWATCH_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Application settings
    app_name: str = "Patch Management Live Monitor"
    debug: bool = False
    log_file: Optional[str] = "patchwatch.log"  # None/empty logs to stderr

    # Azure CLI settings
    az_executable: str = "az"
    graph_page_size: int = 1000  # Resource Graph caps --first at 1000
    query_timeout_seconds: float = 90.0  # per classification query
    command_timeout_seconds: float = 120.0  # per remediation submission

    # Live monitor settings
    refresh_interval_seconds: int = 30
    target_preview_limit: int = 5

    # Classification windows
    assessment_window_hours: int = 24
    installation_window_hours: int = 24
    completed_window_hours: int = 1
    unassessed_window_days: int = 7
    os_type: str = "Windows"  # empty string disables the OS filter

    # Installation history stream
    history_window_minutes: int = 20
    history_fetch_limit: int = 30
    history_display_limit: int = 20

    # Dispatch settings
    dispatch_concurrency: int = 10  # maximum in-flight submissions
    settle_period_seconds: int = 60  # wait between restart and retry
    install_stagger_seconds: float = 2.0  # gap between install submissions
    cancel_grace_seconds: float = 2.0  # SIGTERM -> SIGKILL grace on emergency exit
    graceful_exit_grace_seconds: float = 1.0

    # Install-patches parameters
    install_classifications: str = DEFAULT_WINDOWS_CLASSIFICATIONS
    install_classifications_linux: str = DEFAULT_LINUX_CLASSIFICATIONS
    install_max_duration: str = "PT4H"
    install_reboot_setting: str = "IfRequired"

    # Export settings
    export_directory: str = "."

    def get_install_classifications(self) -> List[str]:
        """Parse the comma-separated classification list for the configured OS."""
        raw = (
            self.install_classifications_linux
            if self.is_linux()
            else self.install_classifications
        )
        return [c.strip() for c in raw.split(",") if c.strip()]

    def is_linux(self) -> bool:
        return self.os_type.strip().lower() == "linux"

    def get_export_directory(self) -> Path:
        return Path(self.export_directory).expanduser()


settings = Settings()


if TYPE_CHECKING:  # pragma: no cover - only for type hints
    from .config_validation import ConfigValidationResult

# Cache of the configuration validation result so it can be reused across modules
_config_validation_result: Optional["ConfigValidationResult"] = None


def set_config_validation_result(result: "ConfigValidationResult") -> None:
    """Persist the configuration validation result for reuse."""

    global _config_validation_result
    _config_validation_result = result


def get_config_validation_result() -> Optional["ConfigValidationResult"]:
    """Return the cached configuration validation result, if available."""

    return _config_validation_result
