"""
Per-tenant sync pipeline.

Runs opportunities -> products -> tasks for one connection. Opportunities
are required: if that stage fails the remaining stages are not run.
Products and tasks are optional: their failure downgrades the run to
partial_success.

Every record is mapped and upserted on its own; a mapping or database
error is counted against that record and the loop moves on. One audit
row is written when the run completes, whatever the outcome.
"""

import secrets
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Iterator, Sequence, TypeVar

import structlog
from sqlalchemy.exc import SQLAlchemyError

from act_billing_sync.client import ActClient
from act_billing_sync.config import SyncSettings
from act_billing_sync.mappers import (
    OpportunityLookup,
    map_opportunity,
    map_product,
    map_task,
)
from act_billing_sync.models import (
    ActOpportunity,
    ActProduct,
    ApiResult,
    Connection,
    MappingResult,
    OperationType,
    SyncErrorType,
    SyncOperationResult,
    TenantSyncResult,
    utcnow,
)
from act_billing_sync.store import ConcurrentModificationError, SyncStore
from act_billing_sync.upsert import UpsertEngine

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Cap on error entries copied into one audit row
MAX_LOGGED_ERRORS = 50


class NoActiveConnectionError(Exception):
    """Raised when a tenant has no active Act! connection."""

    def __init__(self, tenant_id: str):
        super().__init__(f"No active Act! connection for tenant {tenant_id}")
        self.tenant_id = tenant_id


def new_batch_id(prefix: str = "batch") -> str:
    """Batch ids look like batch_1719830400000_3f9a1c2b."""
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def _chunks(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class SyncOrchestrator:
    """
    Runs the sync pipeline for one tenant at a time.

    Example:
        orchestrator = SyncOrchestrator(store, client, settings)

        result = orchestrator.run_tenant("tenant-1", "sync")
        print(result.status, result.count("opportunities"))
    """

    def __init__(
        self,
        store: SyncStore,
        client: ActClient,
        settings: SyncSettings | None = None,
        upserts: UpsertEngine | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] | None = None,
    ):
        self.store = store
        self.client = client
        self.settings = settings or SyncSettings()
        self._now = clock or utcnow
        self._sleep = sleep or time.sleep
        self.upserts = upserts or UpsertEngine(store, clock=self._now)

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    def run_tenant(
        self,
        tenant_id: str,
        operation_type: str = "sync",
        batch_id: str | None = None,
        parent_log_id: str | None = None,
    ) -> TenantSyncResult:
        """
        On-demand entry point: `analysis` fetches without persisting,
        `sync` runs the full pipeline.

        Raises:
            NoActiveConnectionError: tenant has no active connection
            ValueError: unknown operation type
        """
        connection = self.store.get_active_connection(tenant_id)
        if connection is None:
            raise NoActiveConnectionError(tenant_id)

        if operation_type == "analysis":
            return self.analyze(connection, batch_id=batch_id)
        if operation_type == "sync":
            return self.sync_connection(connection, batch_id=batch_id, parent_log_id=parent_log_id)
        raise ValueError(f"Unknown operation type: {operation_type}")

    # -------------------------------------------------------------------------
    # Analysis
    # -------------------------------------------------------------------------

    @staticmethod
    def _describe(result: ApiResult) -> dict[str, Any]:
        if not result.success:
            return {"success": False, "error": result.error, "status_code": result.status_code}

        records = [item.model_dump(mode="json", by_alias=True) for item in result.data]
        return {
            "success": True,
            "count": len(records),
            "sample_structure": sorted(records[0]) if records else [],
            "records": records,
        }

    def analyze(self, connection: Connection, batch_id: str | None = None) -> TenantSyncResult:
        """Fetch opportunities and tasks and report their shape; nothing is persisted."""
        log = logger.bind(tenant_id=connection.tenant_id)
        log.info("Starting analysis")

        summary = SyncOperationResult(
            operation_type=OperationType.ANALYSIS,
            batch_id=batch_id or new_batch_id("analysis"),
            started_at=self._now(),
        )

        opportunities = self.client.get_opportunities(connection)
        tasks = self.client.get_tasks(connection)

        for name, api in (("opportunities", opportunities), ("tasks", tasks)):
            if api.success:
                summary.processed += len(api.data)
            else:
                summary.add_error(SyncErrorType.API, f"Failed to fetch {name}: {api.error}")

        summary.complete(self._now())
        analysis = {
            "database_name": connection.database_name,
            "api_url": connection.base_url(self.settings.default_api_base_url),
            "opportunities": self._describe(opportunities),
            "tasks": self._describe(tasks),
            "rate_limit": self.client.rate_limit_status(connection.tenant_id),
        }

        status = "success" if summary.success and not summary.errors else "failed"
        result = TenantSyncResult(
            tenant_id=connection.tenant_id,
            connection_id=connection.id,
            operation_type=OperationType.ANALYSIS,
            success=status == "success",
            status=status,
            error=summary.errors[0].error_message if summary.errors else None,
            summary=summary,
            analysis=analysis,
        )
        self._write_log(connection, result, endpoints=["/api/opportunities", "/api/tasks"])
        return result

    # -------------------------------------------------------------------------
    # Full sync
    # -------------------------------------------------------------------------

    def sync_connection(
        self,
        connection: Connection,
        batch_id: str | None = None,
        parent_log_id: str | None = None,
    ) -> TenantSyncResult:
        """Run opportunities -> products -> tasks and write one audit row."""
        batch_id = batch_id or new_batch_id("sync")
        log = logger.bind(tenant_id=connection.tenant_id, batch_id=batch_id)
        log.info("Starting tenant sync", connection=connection.display_name)

        summary = SyncOperationResult(
            operation_type=OperationType.SYNC_FULL,
            batch_id=batch_id,
            started_at=self._now(),
        )
        stages: dict[str, SyncOperationResult] = {}

        try:
            opportunities_result, opportunities = self.sync_opportunities(connection, batch_id)
        except Exception as e:
            opportunities_result = self._stage_raised(OperationType.SYNC_OPPORTUNITIES, batch_id, e)
            opportunities = []
        stages["opportunities"] = opportunities_result

        if opportunities_result.success:
            try:
                stages["products"] = self.sync_products(connection, batch_id, opportunities)
            except Exception as e:
                stages["products"] = self._stage_raised(OperationType.SYNC_PRODUCTS, batch_id, e)

            if self.settings.sync_tasks:
                try:
                    stages["tasks"] = self.sync_tasks(connection, batch_id)
                except Exception as e:
                    stages["tasks"] = self._stage_raised(OperationType.SYNC_TASKS, batch_id, e)
        else:
            log.warning("Opportunities stage failed, skipping remaining stages")

        for stage in stages.values():
            summary.processed += stage.processed
            summary.created += stage.created
            summary.updated += stage.updated
            summary.failed += stage.failed
            summary.skipped += stage.skipped
            summary.errors.extend(stage.errors)
            summary.warnings.extend(stage.warnings)

        summary.complete(self._now())

        if not opportunities_result.success:
            status = "failed"
        elif all(stage.success for stage in stages.values()):
            status = "success"
        else:
            status = "partial_success"

        # Only required stages decide overall success
        summary.success = opportunities_result.success

        error = None
        if status != "success":
            failed_stage = next(s for s in stages.values() if not s.success)
            error = (
                failed_stage.errors[0].error_message
                if failed_stage.errors
                else f"{failed_stage.operation_type.value} failed"
            )

        result = TenantSyncResult(
            tenant_id=connection.tenant_id,
            connection_id=connection.id,
            operation_type=OperationType.SYNC_FULL,
            success=summary.success,
            status=status,
            error=error,
            summary=summary,
            stages=stages,
        )

        if result.success:
            try:
                self.store.mark_synced(connection.id)
            except SQLAlchemyError as e:
                log.warning("Failed to record last sync time", error=str(e))
                summary.warnings.append(f"Failed to record last sync time: {e}")

        log.info(
            "Tenant sync complete",
            status=status,
            processed=summary.processed,
            created=summary.created,
            updated=summary.updated,
            failed=summary.failed,
            skipped=summary.skipped,
            duration_ms=summary.duration_ms,
        )

        self._write_log(
            connection,
            result,
            endpoints=["/api/opportunities", "/api/opportunities/{id}/products", "/api/tasks"],
            parent_log_id=parent_log_id,
        )
        return result

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def _new_stage(self, operation_type: OperationType, batch_id: str) -> SyncOperationResult:
        return SyncOperationResult(
            operation_type=operation_type,
            batch_id=batch_id,
            started_at=self._now(),
        )

    def _stage_raised(
        self,
        operation_type: OperationType,
        batch_id: str,
        error: Exception,
    ) -> SyncOperationResult:
        """Failed stage result for an exception that escaped the stage."""
        logger.error("Stage raised", stage=operation_type.value, error=str(error), exc_info=True)
        error_type = (
            SyncErrorType.DATABASE if isinstance(error, SQLAlchemyError) else SyncErrorType.MAPPING
        )
        result = self._new_stage(operation_type, batch_id)
        result.add_error(
            error_type,
            f"{operation_type.value} raised {type(error).__name__}: {error}",
            exception=type(error).__name__,
        )
        return result.complete(self._now())

    def _apply(
        self,
        result: SyncOperationResult,
        entity: str,
        record_id: str,
        mapping: MappingResult,
    ) -> bool:
        """Validate and upsert one mapped record, counting the outcome."""
        if mapping.missing_required_fields:
            result.add_error(
                SyncErrorType.VALIDATION,
                f"Missing required fields: {', '.join(mapping.missing_required_fields)}",
                record_id=record_id,
                missing_fields=mapping.missing_required_fields,
            )
            return False

        try:
            outcome = self.upserts.upsert(entity, mapping.record)
        except (SQLAlchemyError, ConcurrentModificationError) as e:
            logger.warning("Upsert failed", entity=entity, record_id=record_id, error=str(e))
            result.add_error(
                SyncErrorType.DATABASE,
                f"Failed to upsert {entity} {record_id}: {e}",
                record_id=record_id,
            )
            return False

        if outcome.created:
            result.created += 1
        else:
            result.updated += 1
        return True

    def _paced(self, items: Sequence[T]) -> Iterator[T]:
        """Yield items in record batches with a short pause between batches."""
        size = max(1, self.settings.record_batch_size)
        for index, batch in enumerate(_chunks(items, size)):
            if index:
                self._sleep(self.settings.record_batch_delay_seconds)
            yield from batch

    def sync_opportunities(
        self,
        connection: Connection,
        batch_id: str,
    ) -> tuple[SyncOperationResult, list[ActOpportunity]]:
        """Fetch and upsert opportunities. Returns the stage result and the fetched records."""
        result = self._new_stage(OperationType.SYNC_OPPORTUNITIES, batch_id)
        log = logger.bind(tenant_id=connection.tenant_id, stage="opportunities")

        api = self.client.get_opportunities(connection)
        if not api.success:
            result.add_error(SyncErrorType.API, f"Failed to fetch opportunities: {api.error}")
            return result.complete(self._now()), []

        opportunities: list[ActOpportunity] = api.data
        now = self._now()

        for opportunity in self._paced(opportunities):
            result.processed += 1
            try:
                mapping = map_opportunity(opportunity, connection.tenant_id, now=now)
            except Exception as e:
                log.warning("Failed to map opportunity", record_id=opportunity.id, error=str(e))
                result.add_error(SyncErrorType.MAPPING, str(e), record_id=opportunity.id)
                continue

            result.warnings.extend(mapping.warnings)
            if self._apply(result, "opportunities", opportunity.id, mapping) and mapping.used_fallback_fields:
                result.warnings.append(
                    f"Opportunity {mapping.record['name']} used fields: "
                    f"{', '.join(mapping.used_fallback_fields)}"
                )

        result.complete(self._now())
        log.info(
            "Opportunities synced",
            processed=result.processed,
            created=result.created,
            updated=result.updated,
            failed=result.failed,
        )
        return result, opportunities

    def _fetch_products(
        self,
        connection: Connection,
        opportunity_ids: list[str],
        result: SyncOperationResult,
    ) -> list[ActProduct]:
        """Fetch products per opportunity, a bounded number at a time."""
        size = max(1, self.settings.product_fetch_concurrency)
        products: list[ActProduct] = []

        def fetch(opportunity_id: str) -> ApiResult:
            return self.client.get_opportunity_products(connection, opportunity_id)

        with ThreadPoolExecutor(max_workers=size, thread_name_prefix="act-products") as pool:
            for index, batch in enumerate(_chunks(opportunity_ids, size)):
                if index:
                    self._sleep(self.settings.product_fetch_batch_delay_seconds)

                for opportunity_id, api in zip(batch, pool.map(fetch, batch)):
                    if api.success:
                        products.extend(api.data)
                    else:
                        result.processed += 1
                        result.add_error(
                            SyncErrorType.API,
                            f"Failed to fetch products for opportunity {opportunity_id}: {api.error}",
                            record_id=opportunity_id,
                        )
        return products

    def sync_products(
        self,
        connection: Connection,
        batch_id: str,
        opportunities: list[ActOpportunity] | None = None,
    ) -> SyncOperationResult:
        """
        Fetch products for every opportunity and upsert them as line items.

        Products whose opportunity has no active local row are skipped.
        """
        result = self._new_stage(OperationType.SYNC_PRODUCTS, batch_id)
        log = logger.bind(tenant_id=connection.tenant_id, stage="products")

        if opportunities is None:
            api = self.client.get_opportunities(connection)
            if not api.success:
                result.add_error(SyncErrorType.API, f"Failed to fetch opportunities: {api.error}")
                return result.complete(self._now())
            opportunities = api.data

        lookup: OpportunityLookup = self.upserts.opportunity_lookup(connection.tenant_id)
        products = self._fetch_products(connection, [o.id for o in opportunities], result)
        today = self._now().date()

        for product in self._paced(products):
            result.processed += 1

            opportunity_id = lookup.for_product(product)
            if opportunity_id is None:
                result.skipped += 1
                log.debug(
                    "Skipping product without active opportunity",
                    record_id=product.id,
                    act_opportunity_id=product.opportunity_id,
                )
                continue

            try:
                mapping = map_product(
                    product,
                    connection.tenant_id,
                    today=today,
                    billing_range_years=self.settings.billing_date_range_years,
                )
            except Exception as e:
                log.warning("Failed to map product", record_id=product.id, error=str(e))
                result.add_error(SyncErrorType.MAPPING, str(e), record_id=product.id)
                continue

            mapping.record["opportunity_id"] = opportunity_id
            result.warnings.extend(mapping.warnings)
            self._apply(result, "invoice_line_items", product.id, mapping)

        result.complete(self._now())
        log.info(
            "Products synced",
            processed=result.processed,
            created=result.created,
            updated=result.updated,
            failed=result.failed,
            skipped=result.skipped,
        )
        return result

    def sync_tasks(
        self,
        connection: Connection,
        batch_id: str,
        activity_types: list[str] | None = None,
    ) -> SyncOperationResult:
        """Fetch tasks and upsert the billable ones as deliverables."""
        result = self._new_stage(OperationType.SYNC_TASKS, batch_id)
        log = logger.bind(tenant_id=connection.tenant_id, stage="tasks")

        api = self.client.get_tasks(connection)
        if not api.success:
            result.add_error(SyncErrorType.API, f"Failed to fetch tasks: {api.error}")
            return result.complete(self._now())

        tasks = api.data
        if activity_types:
            tasks = [t for t in tasks if t.activity_type_name in activity_types]
            log.debug("Filtered tasks by activity type", count=len(tasks))

        lookup = self.upserts.opportunity_lookup(connection.tenant_id)
        now = self._now()

        for task in self._paced(tasks):
            result.processed += 1
            try:
                mapping = map_task(task, connection.tenant_id, lookup, now=now)
            except Exception as e:
                log.warning("Failed to map task", record_id=task.id, error=str(e))
                result.add_error(SyncErrorType.MAPPING, str(e), record_id=task.id)
                continue

            record = mapping.record
            if self.settings.sync_only_billable_tasks and not record["is_billable"]:
                result.skipped += 1
                continue

            result.warnings.extend(mapping.warnings)

            if record["opportunity_id"] is None:
                result.skipped += 1
                continue

            if self._apply(result, "deliverables", task.id, mapping) and record["is_billable"]:
                if not mapping.activity_type_matched:
                    result.warnings.append(
                        f'Task "{record["title"]}" marked billable but activity type '
                        f'"{record["act_activity_type"]}" not in standard billable types'
                    )

        result.complete(self._now())
        log.info(
            "Tasks synced",
            processed=result.processed,
            created=result.created,
            updated=result.updated,
            failed=result.failed,
            skipped=result.skipped,
        )
        return result

    # -------------------------------------------------------------------------
    # Audit log
    # -------------------------------------------------------------------------

    def _write_log(
        self,
        connection: Connection,
        result: TenantSyncResult,
        endpoints: list[str],
        parent_log_id: str | None = None,
    ) -> str:
        summary = result.summary
        return self.store.insert_log({
            "tenant_id": connection.tenant_id,
            "connection_id": connection.id,
            "database_name": connection.database_name,
            "operation_type": result.operation_type.value,
            "operation_status": result.status,
            "api_endpoint": ",".join(endpoints),
            "http_method": "GET",
            "entity_type": ",".join(result.stages) or None,
            "records_processed": summary.processed,
            "records_created": summary.created,
            "records_updated": summary.updated,
            "records_failed": summary.failed,
            "records_skipped": summary.skipped,
            "warning_count": len(summary.warnings),
            "error_message": result.error,
            "error_details": {
                "errors": [
                    e.model_dump(mode="json") for e in summary.errors[:MAX_LOGGED_ERRORS]
                ],
                "error_count": summary.error_count,
                "stages": {
                    name: {
                        "success": stage.success,
                        "processed": stage.processed,
                        "created": stage.created,
                        "updated": stage.updated,
                        "failed": stage.failed,
                        "skipped": stage.skipped,
                    }
                    for name, stage in result.stages.items()
                },
            },
            "response_time_ms": summary.duration_ms,
            "sync_batch_id": summary.batch_id,
            "parent_log_id": parent_log_id,
            "is_batch_operation": False,
            "started_at": summary.started_at,
            "completed_at": summary.completed_at,
        })
