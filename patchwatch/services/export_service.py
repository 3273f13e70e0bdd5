"""Plain-text export of machine cohorts."""
from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

from ..core.config import Settings, settings
from ..core.models import MachineIdentifier

logger = logging.getLogger(__name__)

_ROW_FORMAT = "{:<30} {:<25} {:<40}"


def format_export(
    title: str,
    description: str,
    machines: Sequence[MachineIdentifier],
    generated_at: datetime,
) -> str:
    """Render the export body as a fixed-width table."""

    lines: List[str] = [
        f"{title} - {generated_at.strftime('%a %b %d %H:%M:%S %Y')}",
        "=" * max(20, len(title) + 3),
        description,
        "",
        _ROW_FORMAT.format("VM Name", "Resource Group", "Subscription ID"),
        _ROW_FORMAT.format("-------", "--------------", "---------------"),
    ]
    for machine in machines:
        lines.append(
            _ROW_FORMAT.format(
                machine.machine_name, machine.resource_group, machine.subscription_id
            ).rstrip()
        )
    return "\n".join(lines) + "\n"


class ExportService:
    """Write cohorts to timestamped text files."""

    def __init__(self, config: Optional[Settings] = None) -> None:
        self._settings = config or settings

    def export(
        self,
        label: str,
        title: str,
        description: str,
        machines: Sequence[MachineIdentifier],
        now: Optional[datetime] = None,
    ) -> Path:
        """Write ``machines`` to ``<label>_YYYYmmdd_HHMMSS.txt`` and return the path."""

        generated_at = now or datetime.now()
        directory = self._settings.get_export_directory()
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{label}_{generated_at.strftime('%Y%m%d_%H%M%S')}.txt"
        path.write_text(
            format_export(title, description, machines, generated_at), encoding="utf-8"
        )
        logger.info("Exported %d machines to %s", len(machines), path)
        return path


export_service = ExportService()

__all__ = ["ExportService", "export_service", "format_export"]
