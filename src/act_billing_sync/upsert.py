"""
Idempotent, field-preserving upserts of mapped Act! records.

The vendor id is the only conflict key. On update, a per-entity whitelist
of locally editable fields keeps its existing value when the feed has
nothing for it, when the row came from another producer, or (invoice and
deliverable links) whenever a link exists. Every touch clears
soft_deleted_at and refreshes last_seen_at; created_at is never
rewritten.

The read-merge-write cycle is guarded by row_version: if a UI edit lands
between the read and the write, the write is rejected and the merge is
redone from the fresh row.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

import structlog
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt

from act_billing_sync.mappers import OpportunityLookup
from act_billing_sync.models import SourceType, utcnow
from act_billing_sync.store import ConcurrentModificationError, SyncStore, UpsertOutcome

logger = structlog.get_logger(__name__)

MAX_MERGE_ATTEMPTS = 3


@dataclass(frozen=True)
class EntitySpec:
    """How one entity type is keyed and merged."""
    table: str
    conflict_key: str
    # Keep existing when set and (incoming empty or row not vendor-owned)
    preservable: tuple[str, ...] = ()
    # Keep existing whenever set
    always_preserve: tuple[str, ...] = ()
    # Keep existing when strictly longer than incoming
    keep_longer_text: tuple[str, ...] = ()


ENTITY_SPECS = {
    "opportunities": EntitySpec(
        table="opportunities",
        conflict_key="act_opportunity_id",
        # Every opportunity field follows Act!; none is edited locally
    ),
    "invoice_line_items": EntitySpec(
        table="invoice_line_items",
        conflict_key="act_reference",
        preservable=(
            "invoice_id",
            "deliverable_id",
            "service_period_start",
            "service_period_end",
            "line_number",
        ),
        always_preserve=("invoice_id", "deliverable_id"),
        keep_longer_text=("details",),
    ),
    "deliverables": EntitySpec(
        table="deliverables",
        conflict_key="act_task_id",
        preservable=("invoice_id",),
        always_preserve=("invoice_id",),
        keep_longer_text=("description",),
    ),
}


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def merge_record(
    spec: EntitySpec,
    incoming: dict[str, Any],
    existing: dict[str, Any],
) -> tuple[dict[str, Any], list[str]]:
    """
    Merge a freshly mapped record over an existing row.

    Returns the record to write and the names of the preserved fields.
    """
    merged = dict(incoming)
    preserved: list[str] = []
    foreign = existing.get("source") not in (None, SourceType.ACT_SYNC.value)

    for name in spec.preservable:
        current = existing.get(name)
        if _is_empty(current):
            continue
        if _is_empty(incoming.get(name)) or foreign or name in spec.always_preserve:
            merged[name] = current
            preserved.append(name)

    for name in spec.keep_longer_text:
        current = existing.get(name)
        if not isinstance(current, str) or not current:
            continue
        if foreign or len(current) > len(incoming.get(name) or ""):
            merged[name] = current
            preserved.append(name)

    # The producer that created the row keeps ownership of it
    if existing.get("source"):
        merged["source"] = existing["source"]

    merged.pop("created_at", None)
    return merged, preserved


class UpsertEngine:
    """
    Applies mapped records to the store.

    Example:
        engine = UpsertEngine(store)

        outcome = engine.upsert("invoice_line_items", mapping.record)
        if outcome.created:
            ...
    """

    def __init__(self, store: SyncStore, clock: Callable[[], datetime] | None = None):
        self.store = store
        self._now = clock or utcnow

        self._created = 0
        self._updated = 0
        self._restored = 0
        self._conflicts = 0

    def upsert(self, entity: str, record: dict[str, Any]) -> UpsertOutcome:
        """
        Insert or merge-update one record keyed on its vendor id.

        Raises:
            ConcurrentModificationError: the row kept changing underneath
                the merge for MAX_MERGE_ATTEMPTS attempts
        """
        spec = ENTITY_SPECS[entity]

        for attempt in Retrying(
            retry=retry_if_exception_type(ConcurrentModificationError),
            stop=stop_after_attempt(MAX_MERGE_ATTEMPTS),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    self._conflicts += 1
                    logger.info(
                        "Row changed during merge, retrying",
                        table=spec.table,
                        key=record.get(spec.conflict_key),
                        attempt=attempt.retry_state.attempt_number,
                    )
                return self._upsert_once(spec, record)

    def _upsert_once(self, spec: EntitySpec, record: dict[str, Any]) -> UpsertOutcome:
        key = record[spec.conflict_key]
        now = self._now()
        existing = self.store.select_one(spec.table, {spec.conflict_key: key})

        if existing is None:
            row = {**record, "soft_deleted_at": None, "last_seen_at": now}
            # Version 0 never matches: a row inserted concurrently forces a re-merge
            outcome = self.store.upsert(spec.table, row, spec.conflict_key, expected_version=0)
            self._created += outcome.created
            self._updated += not outcome.created
            return outcome

        merged, preserved = merge_record(spec, record, existing)
        merged["soft_deleted_at"] = None
        merged["last_seen_at"] = now

        if existing.get("soft_deleted_at") is not None:
            self._restored += 1
            logger.info("Restoring soft-deleted record", table=spec.table, key=key)
        if preserved:
            logger.debug("Preserved local values", table=spec.table, key=key, fields=preserved)

        outcome = self.store.upsert(
            spec.table,
            merged,
            spec.conflict_key,
            expected_version=existing["row_version"],
        )
        self._updated += 1
        return outcome

    def opportunity_lookup(self, tenant_id: str) -> OpportunityLookup:
        """Active, non-closed, non-deleted opportunities for parent resolution."""
        lookup = OpportunityLookup(
            by_act_id=self.store.opportunity_mappings(tenant_id),
            by_company=self.store.opportunity_company_index(tenant_id),
        )
        logger.debug("Built opportunity lookup", tenant_id=tenant_id, opportunities=len(lookup))
        return lookup

    def get_stats(self) -> dict[str, int]:
        return {
            "created": self._created,
            "updated": self._updated,
            "restored": self._restored,
            "conflicts": self._conflicts,
        }
