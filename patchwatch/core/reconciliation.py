"""Target cohort reconciliation and status counting."""
from __future__ import annotations

from typing import Iterable, List, Optional

from .models import (
    Classification,
    InventorySnapshot,
    MachineIdentifier,
    StatusCounts,
)


def compute_target(
    pending: Iterable[MachineIdentifier],
    in_progress: Iterable[MachineIdentifier],
) -> List[MachineIdentifier]:
    """Return pending machines that are not already installing.

    Invalid and duplicate identifiers are dropped before comparison; the
    result keeps the first-seen order of ``pending``.
    """

    busy = {machine for machine in in_progress if machine.is_valid}
    seen = set()
    target: List[MachineIdentifier] = []
    for machine in pending:
        if not machine.is_valid or machine in seen:
            continue
        seen.add(machine)
        if machine not in busy:
            target.append(machine)
    return target


def target_from_snapshot(snapshot: InventorySnapshot) -> List[MachineIdentifier]:
    return compute_target(
        snapshot.get(Classification.PENDING).machines,
        snapshot.get(Classification.IN_PROGRESS).machines,
    )


def compute_counts(
    snapshot: InventorySnapshot, target: Optional[Iterable[MachineIdentifier]] = None
) -> StatusCounts:
    """Count each raw classification independently; sets may overlap."""

    if target is None:
        target = target_from_snapshot(snapshot)
    return StatusCounts(
        pending=snapshot.get(Classification.PENDING).count,
        in_progress=snapshot.get(Classification.IN_PROGRESS).count,
        rebooting=snapshot.get(Classification.REBOOTING).count,
        completed=snapshot.get(Classification.RECENTLY_COMPLETED).count,
        failed=snapshot.get(Classification.FAILED).count,
        deallocated=snapshot.get(Classification.DEALLOCATED).count,
        unassessed=snapshot.get(Classification.UNASSESSED).count,
        target=len(list(target)),
    )
