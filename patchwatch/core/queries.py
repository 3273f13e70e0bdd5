"""Resource Graph (KQL) query definitions for patch classification."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from .config import Settings
from .models import Classification

# availablePatchCountByClassification buckets summed into the pending total.
PATCH_COUNT_BUCKETS = (
    "security",
    "critical",
    "updateRollup",
    "featurePack",
    "tools",
    "servicePack",
    "other",
    "updates",
)

REBOOTING_POWER_STATES = ("VM starting", "VM stopping", "VM deallocating")
DEALLOCATED_POWER_STATE = "VM deallocated"
RUNNING_POWER_STATE = "VM running"
TERMINAL_INSTALL_STATUSES = ("Succeeded", "Failed", "CompletedWithWarnings")
HISTORY_STATUSES = TERMINAL_INSTALL_STATUSES + ("InProgress",)


class QueryShape(str, Enum):
    """Output shape expected from a query."""
    IDS = "ids"
    RECORDS = "records"


@dataclass(frozen=True)
class QueryDefinition:
    """A named Resource Graph query and the shape of its rows."""

    name: str
    kql: str
    shape: QueryShape = QueryShape.IDS
    classification: Optional[Classification] = None


def _kql_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _kql_list(values) -> str:
    return ", ".join(_kql_string(value) for value in values)


def _os_filter(expression: str, os_type: str) -> str:
    if not os_type.strip():
        return ""
    return f" and tostring({expression}) =~ {_kql_string(os_type.strip())}"


def pending_query(settings: Settings) -> QueryDefinition:
    """Machines whose latest recent assessment reports available updates."""

    total = "+\n  ".join(
        f'coalesce(toint(cls["{bucket}"]),0)' for bucket in PATCH_COUNT_BUCKETS
    )
    kql = f"""
patchassessmentresources
| extend prop=todynamic(properties)
| extend assessedAt=todatetime(prop.lastModifiedDateTime)
| where assessedAt >= ago({settings.assessment_window_hours}h){_os_filter("prop.osType", settings.os_type)}
| extend cls=todynamic(prop["availablePatchCountByClassification"])
| extend TotalAvailable =
  {total}
| summarize arg_max(assessedAt, TotalAvailable, prop, cls) by id
| where toint(TotalAvailable) > 0
| project id
"""
    return QueryDefinition("pending", kql, QueryShape.IDS, Classification.PENDING)


def in_progress_query(settings: Settings) -> QueryDefinition:
    kql = f"""
patchinstallationresources
| extend p = todynamic(properties)
| where todatetime(p.startDateTime) >= ago({settings.installation_window_hours}h) and tostring(p.status) == "InProgress"
| project id
"""
    return QueryDefinition("in-progress", kql, QueryShape.IDS, Classification.IN_PROGRESS)


def rebooting_query(settings: Settings) -> QueryDefinition:
    kql = f"""
Resources
| where type == "microsoft.compute/virtualmachines"
| extend powerState = tostring(properties.extended.instanceView.powerState.displayStatus)
| extend provisioningState = tostring(properties.provisioningState)
| where powerState in ({_kql_list(REBOOTING_POWER_STATES)}) or provisioningState == "Updating"
| project id, powerState, provisioningState
"""
    return QueryDefinition("rebooting", kql, QueryShape.RECORDS, Classification.REBOOTING)


def deallocated_query(settings: Settings) -> QueryDefinition:
    kql = f"""
Resources
| where type == "microsoft.compute/virtualmachines"
| extend powerState = tostring(properties.extended.instanceView.powerState.displayStatus)
| where powerState == {_kql_string(DEALLOCATED_POWER_STATE)}
| project id, powerState
"""
    return QueryDefinition(
        "deallocated", kql, QueryShape.RECORDS, Classification.DEALLOCATED
    )


def recently_completed_query(settings: Settings) -> QueryDefinition:
    kql = f"""
patchinstallationresources
| extend p = todynamic(properties)
| where todatetime(p.startDateTime) >= ago({settings.installation_window_hours}h)
| where tostring(p.status) in ({_kql_list(TERMINAL_INSTALL_STATUSES)})
| where todatetime(p.lastModifiedDateTime) >= ago({settings.completed_window_hours}h)
| project id
"""
    return QueryDefinition(
        "recently-completed", kql, QueryShape.IDS, Classification.RECENTLY_COMPLETED
    )


def failed_query(settings: Settings) -> QueryDefinition:
    kql = f"""
patchinstallationresources
| extend p = todynamic(properties)
| where todatetime(p.startDateTime) >= ago({settings.installation_window_hours}h)
| where tostring(p.status) == "Failed"
| project id
"""
    return QueryDefinition("failed", kql, QueryShape.IDS, Classification.FAILED)


def unassessed_query(settings: Settings) -> QueryDefinition:
    """Running machines without an assessment in the window (left-anti join)."""

    kql = f"""
Resources
| where type == "microsoft.compute/virtualmachines"
| where tostring(properties.extended.instanceView.powerState.displayStatus) == {_kql_string(RUNNING_POWER_STATE)}{_os_filter("properties.storageProfile.osDisk.osType", settings.os_type)}
| extend vmId = tolower(id)
| join kind=leftouter (
    patchassessmentresources
    | extend prop=todynamic(properties)
    | extend assessedAt=todatetime(prop.lastModifiedDateTime)
    | where assessedAt >= ago({settings.unassessed_window_days}d)
    | extend vmId = tostring(split(tolower(id), "/patchassessmentresults/")[0])
    | distinct vmId
    | extend hasRecentAssessment=true
) on vmId
| where isnull(hasRecentAssessment)
| project id
"""
    return QueryDefinition("unassessed", kql, QueryShape.IDS, Classification.UNASSESSED)


def history_query(settings: Settings) -> QueryDefinition:
    """Installation events modified inside the history window, newest first."""

    kql = f"""
patchinstallationresources
| where type =~ "microsoft.compute/virtualmachines/patchinstallationresults" or type =~ "microsoft.hybridcompute/machines/patchinstallationresults"
| where todatetime(properties.lastModifiedDateTime) > ago({settings.history_window_minutes}m)
| where tostring(properties.status) in~ ({_kql_list(HISTORY_STATUSES)})
| parse id with * "achines/" resourceName "/patchInstallationResults/" *
| parse id with * "/resourceGroups/" resourceGroup "/providers/" *
| extend eventType = "Installation"
| extend p = todynamic(properties)
| extend status = tostring(p.status)
| extend startDateTime = todatetime(p.startDateTime)
| extend lastModifiedDateTime = todatetime(p.lastModifiedDateTime)
| extend startedBy = tostring(p.startedBy)
| extend rebootStatus = tostring(p.rebootStatus)
| extend errorCode = tostring(p.error.code)
| extend errorMessage = tostring(p.error.message)
| project id, resourceName, resourceGroup, eventType, status, startDateTime, lastModifiedDateTime, startedBy, rebootStatus, errorCode, errorMessage
| order by lastModifiedDateTime desc
| limit {settings.history_fetch_limit}
"""
    return QueryDefinition("history", kql, QueryShape.RECORDS)


def classification_queries(settings: Settings) -> Dict[Classification, QueryDefinition]:
    """All seven classification queries keyed by classification."""

    builders = (
        pending_query,
        in_progress_query,
        rebooting_query,
        recently_completed_query,
        failed_query,
        deallocated_query,
        unassessed_query,
    )
    definitions = [builder(settings) for builder in builders]
    return {definition.classification: definition for definition in definitions}
