"""Data models for the console."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Classification(str, Enum):
    """Patch-lifecycle category a machine can belong to during one cycle."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    REBOOTING = "rebooting"
    RECENTLY_COMPLETED = "recently_completed"
    FAILED = "failed"
    DEALLOCATED = "deallocated"
    UNASSESSED = "unassessed"


class InstallationStatus(str, Enum):
    """Status reported by a patch installation result."""
    IN_PROGRESS = "InProgress"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    COMPLETED_WITH_WARNINGS = "CompletedWithWarnings"
    UNKNOWN = "Unknown"


class CommandKind(str, Enum):
    """Remediation command; the value is the `az vm` sub-command."""
    START = "start"
    RESTART = "restart"
    INSTALL_UPDATES = "install-patches"
    TRIGGER_ASSESSMENT = "assess-patches"

    @property
    def label(self) -> str:
        return _COMMAND_LABELS[self]


_COMMAND_LABELS = {
    CommandKind.START: "start",
    CommandKind.RESTART: "restart",
    CommandKind.INSTALL_UPDATES: "update installation",
    CommandKind.TRIGGER_ASSESSMENT: "assessment",
}


class MachineIdentifier(BaseModel):
    """Subscription / resource group / machine name triple.

    Equality and hashing use all three fields, case-sensitively. Identifiers
    with an empty field come from malformed resource ids and must not be
    used as command targets.
    """

    model_config = ConfigDict(frozen=True)

    subscription_id: str = ""
    resource_group: str = ""
    machine_name: str = ""

    @property
    def is_valid(self) -> bool:
        return bool(self.subscription_id and self.resource_group and self.machine_name)

    @property
    def short_subscription(self) -> str:
        return f"{self.subscription_id[:8]}..."

    def __str__(self) -> str:
        return f"{self.machine_name} ({self.resource_group})"


class ClassificationSet(BaseModel):
    """Snapshot of one classification query.

    `resource_ids` is the raw query output (counted as-is); `machines` holds
    the parsed, valid, de-duplicated identifiers in first-seen order.
    """

    model_config = ConfigDict(frozen=True)

    classification: Classification
    resource_ids: Tuple[str, ...] = ()
    machines: Tuple[MachineIdentifier, ...] = ()
    records: Tuple[Dict[str, Any], ...] = ()
    error: Optional[str] = None

    @property
    def count(self) -> int:
        return len(self.resource_ids)

    @property
    def degraded(self) -> bool:
        return self.error is not None


class HistoryEvent(BaseModel):
    """Patch installation event from the installation-history query."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    resource_id: str = Field("", alias="id")
    resource_name: str = Field("", alias="resourceName")
    resource_group: str = Field("", alias="resourceGroup")
    event_type: str = Field("Installation", alias="eventType")
    status: InstallationStatus = InstallationStatus.UNKNOWN
    started_at: Optional[datetime] = Field(None, alias="startDateTime")
    last_modified: Optional[datetime] = Field(None, alias="lastModifiedDateTime")
    started_by: Optional[str] = Field(None, alias="startedBy")
    reboot_status: Optional[str] = Field(None, alias="rebootStatus")
    error_code: Optional[str] = Field(None, alias="errorCode")
    error_message: Optional[str] = Field(None, alias="errorMessage")

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, value: Any) -> InstallationStatus:
        try:
            return InstallationStatus(value)
        except ValueError:
            return InstallationStatus.UNKNOWN

    @field_validator("started_at", "last_modified", mode="before")
    @classmethod
    def _blank_timestamp(cls, value: Any) -> Any:
        if value in ("", "null"):
            return None
        return value

    @field_validator(
        "resource_id", "resource_name", "resource_group", "event_type", mode="before"
    )
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value


class TrackedEvent(BaseModel):
    """History event annotated with its fingerprint and new-since-last-refresh flag."""

    model_config = ConfigDict(frozen=True)

    event: HistoryEvent
    fingerprint: str
    is_new: bool = False


class StatusCounts(BaseModel):
    """Independent per-classification counts for one refresh cycle."""

    pending: int = 0
    in_progress: int = 0
    rebooting: int = 0
    completed: int = 0
    failed: int = 0
    deallocated: int = 0
    unassessed: int = 0
    target: int = 0

    @property
    def active(self) -> int:
        return self.in_progress + self.rebooting


@dataclass(frozen=True)
class InventorySnapshot:
    """Everything gathered in one refresh cycle."""

    captured_at: datetime
    sets: Dict[Classification, ClassificationSet] = field(default_factory=dict)
    history: List[HistoryEvent] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def get(self, classification: Classification) -> ClassificationSet:
        existing = self.sets.get(classification)
        if existing is not None:
            return existing
        return ClassificationSet(classification=classification)
