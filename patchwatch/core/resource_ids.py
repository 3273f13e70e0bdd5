"""Decompose Azure resource ids into machine identifiers."""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence

from .models import Classification, ClassificationSet, MachineIdentifier

SUBSCRIPTION_SEGMENT = "subscriptions"
RESOURCE_GROUP_SEGMENT = "resourcegroups"
# Microsoft.Compute uses virtualMachines, Microsoft.HybridCompute (Arc) uses machines.
MACHINE_SEGMENTS = frozenset({"virtualmachines", "machines"})


def parse_resource_id(resource_id: Any) -> MachineIdentifier:
    """Return the subscription / resource group / machine triple of a resource id.

    Segment names are matched case-insensitively and the first occurrence of
    each wins, so child resources (``.../virtualMachines/vm1/patchInstallationResults/x``)
    resolve to their parent machine. Missing parts come back as empty strings;
    malformed input never raises.
    """

    if not isinstance(resource_id, str) or not resource_id.strip():
        return MachineIdentifier()

    segments = [segment for segment in resource_id.strip().split("/") if segment]

    subscription_id = ""
    resource_group = ""
    machine_name = ""

    # Captured values are skipped so a group called "machines" is not read as a key.
    index = 0
    while index < len(segments) - 1:
        name = segments[index].lower()
        value = segments[index + 1]
        if name == SUBSCRIPTION_SEGMENT and not subscription_id:
            subscription_id = value
        elif name == RESOURCE_GROUP_SEGMENT and not resource_group:
            resource_group = value
        elif name in MACHINE_SEGMENTS and not machine_name:
            machine_name = value
        else:
            index += 1
            continue
        index += 2

    return MachineIdentifier(
        subscription_id=subscription_id,
        resource_group=resource_group,
        machine_name=machine_name,
    )


def parse_many(resource_ids: Iterable[Any]) -> List[MachineIdentifier]:
    """Parse ids, dropping unusable and duplicate machines in first-seen order."""

    seen = set()
    machines: List[MachineIdentifier] = []
    for resource_id in resource_ids:
        machine = parse_resource_id(resource_id)
        if not machine.is_valid or machine in seen:
            continue
        seen.add(machine)
        machines.append(machine)
    return machines


def build_classification_set(
    classification: Classification,
    resource_ids: Sequence[str],
    records: Optional[Sequence[Dict[str, Any]]] = None,
    error: Optional[str] = None,
) -> ClassificationSet:
    """Create a classification snapshot from raw query output."""

    cleaned = tuple(
        str(resource_id).strip()
        for resource_id in resource_ids
        if resource_id is not None and str(resource_id).strip()
    )
    return ClassificationSet(
        classification=classification,
        resource_ids=cleaned,
        machines=tuple(parse_many(cleaned)),
        records=tuple(records or ()),
        error=error,
    )
