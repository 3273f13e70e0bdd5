"""Inventory service classifying virtual machines by patch state."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from ..core.config import Settings, settings
from ..core.event_tracker import select_recent_events
from ..core.models import (
    Classification,
    ClassificationSet,
    HistoryEvent,
    InventorySnapshot,
    MachineIdentifier,
)
from ..core.queries import (
    QueryDefinition,
    QueryShape,
    classification_queries,
    deallocated_query,
    failed_query,
    history_query,
    in_progress_query,
    pending_query,
    unassessed_query,
)
from ..core.reconciliation import compute_target
from ..core.resource_ids import build_classification_set
from .az_cli_service import AzCliError, AzCliService, az_cli_service

logger = logging.getLogger(__name__)


class InventoryService:
    """Issue classification queries and assemble per-cycle snapshots.

    A failing or stalled query degrades to an empty classification with a
    warning; it never propagates into the refresh loop.
    """

    def __init__(
        self,
        cli: Optional[AzCliService] = None,
        config: Optional[Settings] = None,
    ) -> None:
        self._cli = cli or az_cli_service
        self._settings = config or settings

    async def run_query(
        self,
        definition: QueryDefinition,
        subscriptions: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Run one query across the enabled subscriptions and collect its rows."""

        if subscriptions is None:
            subscriptions = await self._cli.list_enabled_subscriptions()
        rows: List[Dict[str, Any]] = []
        async for row in self._cli.iter_graph_records(
            definition.kql,
            subscriptions,
            page_size=self._settings.graph_page_size,
        ):
            rows.append(row)
        logger.debug("Query %s returned %d rows", definition.name, len(rows))
        return rows

    async def classify(self, definition: QueryDefinition) -> ClassificationSet:
        """Run a classification query, degrading to an empty set on failure."""

        classification = definition.classification
        assert classification is not None
        timeout = self._settings.query_timeout_seconds
        try:
            rows = await asyncio.wait_for(self.run_query(definition), timeout=timeout)
        except asyncio.TimeoutError:
            message = f"{definition.name} query timed out after {timeout:.0f}s"
            logger.warning(message)
            return build_classification_set(classification, [], error=message)
        except AzCliError as exc:
            logger.warning("%s query failed: %s", definition.name, exc.message)
            return build_classification_set(
                classification, [], error=f"{definition.name} query failed: {exc.message}"
            )
        except Exception as exc:  # pragma: no cover - defensive logging
            logger.exception("Unexpected failure running %s query", definition.name)
            return build_classification_set(
                classification, [], error=f"{definition.name} query failed: {exc}"
            )

        resource_ids = [str(row.get("id") or "") for row in rows]
        records = rows if definition.shape == QueryShape.RECORDS else None
        return build_classification_set(classification, resource_ids, records=records)

    async def get_pending(self) -> ClassificationSet:
        return await self.classify(pending_query(self._settings))

    async def get_in_progress(self) -> ClassificationSet:
        return await self.classify(in_progress_query(self._settings))

    async def get_failed(self) -> ClassificationSet:
        return await self.classify(failed_query(self._settings))

    async def get_deallocated(self) -> ClassificationSet:
        return await self.classify(deallocated_query(self._settings))

    async def get_unassessed(self) -> ClassificationSet:
        return await self.classify(unassessed_query(self._settings))

    async def get_target_cohort(self) -> Tuple[List[MachineIdentifier], List[str]]:
        """Return the target cohort together with any query warnings."""

        pending, in_progress = await asyncio.gather(
            self.get_pending(), self.get_in_progress()
        )
        warnings = [item.error for item in (pending, in_progress) if item.error]
        return compute_target(pending.machines, in_progress.machines), warnings

    async def get_history(
        self, now: Optional[datetime] = None
    ) -> Tuple[List[HistoryEvent], Optional[str]]:
        """Fetch installation events inside the configured history window."""

        definition = history_query(self._settings)
        timeout = self._settings.query_timeout_seconds
        try:
            rows = await asyncio.wait_for(self.run_query(definition), timeout=timeout)
        except asyncio.TimeoutError:
            message = f"history query timed out after {timeout:.0f}s"
            logger.warning(message)
            return [], message
        except AzCliError as exc:
            logger.warning("History query failed: %s", exc.message)
            return [], f"history query failed: {exc.message}"
        except Exception as exc:  # pragma: no cover - defensive logging
            logger.exception("Unexpected failure running history query")
            return [], f"history query failed: {exc}"

        events: List[HistoryEvent] = []
        for row in rows:
            try:
                events.append(HistoryEvent.model_validate(row))
            except ValidationError as exc:
                logger.debug("Skipping malformed history row %s: %s", row.get("id"), exc)

        recent = select_recent_events(
            events,
            now or datetime.now(timezone.utc),
            timedelta(minutes=self._settings.history_window_minutes),
            self._settings.history_fetch_limit,
        )
        return recent, None

    async def gather_snapshot(self) -> InventorySnapshot:
        """Run every classification and the history query concurrently.

        Returns once all units have completed; each unit is individually
        bounded by the query timeout.
        """

        definitions = classification_queries(self._settings)
        started = datetime.now(timezone.utc)
        results = await asyncio.gather(
            *(self.classify(definition) for definition in definitions.values()),
            self.get_history(now=started),
        )
        classification_sets: List[ClassificationSet] = list(results[:-1])
        history, history_warning = results[-1]

        sets: Dict[Classification, ClassificationSet] = {
            item.classification: item for item in classification_sets
        }
        warnings = [item.error for item in classification_sets if item.error]
        if history_warning:
            warnings.append(history_warning)

        logger.info(
            "Inventory snapshot gathered in %.1fs (%d warnings)",
            (datetime.now(timezone.utc) - started).total_seconds(),
            len(warnings),
        )
        return InventorySnapshot(
            captured_at=started,
            sets=sets,
            history=history,
            warnings=warnings,
        )


inventory_service = InventoryService()

__all__ = ["InventoryService", "inventory_service"]
