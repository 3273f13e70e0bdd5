"""Start-up checks for patchwatch settings."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from .config import (
    settings,
    set_config_validation_result,
    get_config_validation_result,
)

KNOWN_OS_TYPES = {"windows", "linux"}
KNOWN_REBOOT_SETTINGS = {"ifrequired", "never", "always"}


@dataclass
class ConfigIssue:
    """One problem found in the settings."""

    message: str
    hint: Optional[str] = None


@dataclass
class ConfigValidationResult:
    """Errors and warnings from one validation run."""

    checked_at: datetime
    errors: List[ConfigIssue] = field(default_factory=list)
    warnings: List[ConfigIssue] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)


def _warn(result: ConfigValidationResult, message: str, hint: Optional[str] = None) -> None:
    result.warnings.append(ConfigIssue(message=message, hint=hint))


def _error(result: ConfigValidationResult, message: str, hint: Optional[str] = None) -> None:
    result.errors.append(ConfigIssue(message=message, hint=hint))


def run_config_checks(force: bool = False) -> ConfigValidationResult:
    """Check settings for unusable values and cache the outcome."""

    if not force:
        cached = get_config_validation_result()
        if cached is not None:
            return cached

    result = ConfigValidationResult(checked_at=datetime.now(timezone.utc))

    if settings.dispatch_concurrency < 1:
        _error(
            result,
            "PATCHWATCH_DISPATCH_CONCURRENCY must be at least 1.",
            "Set PATCHWATCH_DISPATCH_CONCURRENCY to the number of commands allowed in flight (default 10).",
        )

    if settings.refresh_interval_seconds < 1:
        _error(
            result,
            "PATCHWATCH_REFRESH_INTERVAL_SECONDS must be a positive number of seconds.",
            "Use the default of 30 seconds unless the tenant is very small.",
        )
    elif settings.refresh_interval_seconds < 10:
        _warn(
            result,
            "PATCHWATCH_REFRESH_INTERVAL_SECONDS is below 10 seconds.",
            "Resource Graph throttles aggressive polling; consider 30 seconds or more.",
        )

    if settings.query_timeout_seconds <= 0:
        _error(
            result,
            "PATCHWATCH_QUERY_TIMEOUT_SECONDS must be greater than zero.",
            "A stalled query would otherwise block the refresh cycle indefinitely.",
        )

    if settings.settle_period_seconds < 0:
        _error(
            result,
            "PATCHWATCH_SETTLE_PERIOD_SECONDS cannot be negative.",
        )

    if settings.install_stagger_seconds < 0:
        _error(
            result,
            "PATCHWATCH_INSTALL_STAGGER_SECONDS cannot be negative.",
        )

    if not 1 <= settings.graph_page_size <= 1000:
        _error(
            result,
            "PATCHWATCH_GRAPH_PAGE_SIZE must be between 1 and 1000.",
            "Resource Graph returns at most 1000 rows per page.",
        )

    if settings.history_display_limit > settings.history_fetch_limit:
        _warn(
            result,
            "PATCHWATCH_HISTORY_DISPLAY_LIMIT exceeds PATCHWATCH_HISTORY_FETCH_LIMIT.",
            "Only the fetched events can be displayed; raise the fetch limit as well.",
        )

    os_type = settings.os_type.strip().lower()
    if not os_type:
        _warn(
            result,
            "PATCHWATCH_OS_TYPE is empty; pending and unassessed queries cover every OS family.",
            "Install commands will use the Windows classification list.",
        )
    elif os_type not in KNOWN_OS_TYPES:
        _warn(
            result,
            f"PATCHWATCH_OS_TYPE '{settings.os_type}' is not a recognised OS family.",
            "Use Windows or Linux.",
        )

    if not settings.get_install_classifications():
        _error(
            result,
            "No update classifications configured for install commands.",
            "Set PATCHWATCH_INSTALL_CLASSIFICATIONS (or the _LINUX variant) to a comma-separated list.",
        )

    if settings.install_reboot_setting.strip().lower() not in KNOWN_REBOOT_SETTINGS:
        _warn(
            result,
            f"PATCHWATCH_INSTALL_REBOOT_SETTING '{settings.install_reboot_setting}' is not recognised.",
            "Use IfRequired, Never or Always.",
        )

    set_config_validation_result(result)
    return result
