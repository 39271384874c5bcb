"""
Scheduled batch sync across all due tenants.

Tenants are processed one at a time with a fixed pause between them to
spread vendor load. A failure in one tenant is recorded and the loop
moves on; it never aborts the batch.
"""

import time
from datetime import datetime
from typing import Callable

import structlog

from act_billing_sync.client import ActClient
from act_billing_sync.config import SyncSettings
from act_billing_sync.models import (
    BatchSyncResult,
    Connection,
    ConnectionSyncSummary,
    OperationType,
    TenantSyncResult,
    utcnow,
)
from act_billing_sync.orchestrator import SyncOrchestrator, new_batch_id
from act_billing_sync.store import SyncStore

logger = structlog.get_logger(__name__)


class TenantSyncFailed(Exception):
    """A tenant's run ended without its required stages succeeding."""
    pass


def _synced(result: TenantSyncResult, stage: str) -> int:
    return result.count(stage, "created") + result.count(stage, "updated")


class BatchScheduler:
    """
    Runs the sync pipeline for every connection whose next_sync_at is due.

    Example:
        scheduler = BatchScheduler(store, client, orchestrator, settings)

        result = scheduler.run_batch()
        print(json.dumps(result.to_summary()))
    """

    def __init__(
        self,
        store: SyncStore,
        client: ActClient,
        orchestrator: SyncOrchestrator,
        settings: SyncSettings | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] | None = None,
    ):
        self.store = store
        self.client = client
        self.orchestrator = orchestrator
        self.settings = settings or SyncSettings()
        self._now = clock or utcnow
        self._sleep = sleep or time.sleep

    def run_batch(self) -> BatchSyncResult:
        """Sync all due connections and return the batch outcome."""
        started = time.monotonic()
        batch_id = new_batch_id()
        log = logger.bind(batch_id=batch_id)

        connections = self.store.connections_due_for_sync(self._now())
        log.info("Starting daily sync batch", connections=len(connections))

        result = BatchSyncResult(
            batch_id=batch_id,
            total_connections=len(connections),
            started_at=self._now(),
        )

        batch_log_id = self.store.insert_log({
            "operation_type": OperationType.DAILY_SYNC_BATCH.value,
            "operation_status": "running",
            "is_batch_operation": True,
            "sync_batch_id": batch_id,
            "started_at": result.started_at,
            "records_processed": 0,
            "request_params": {"total_connections": len(connections)},
        })

        for index, connection in enumerate(connections):
            summary = self.sync_one(connection, batch_id, batch_log_id)
            result.sync_results.append(summary)

            if summary.status == "success":
                result.successful_syncs += 1
            else:
                result.failed_syncs += 1

            if index < len(connections) - 1:
                self._sleep(self.settings.inter_tenant_delay_seconds)

        result.completed_at = self._now()
        result.total_duration_ms = int((time.monotonic() - started) * 1000)

        self.store.update_log(batch_log_id, {
            "operation_status": result.status,
            "completed_at": result.completed_at,
            "records_processed": result.successful_syncs,
            "records_failed": result.failed_syncs,
            "response_time_ms": result.total_duration_ms,
            "response_data": {
                "total_connections": result.total_connections,
                "successful_syncs": result.successful_syncs,
                "failed_syncs": result.failed_syncs,
                "batch_id": batch_id,
            },
        })

        log.info(
            "Daily sync batch complete",
            status=result.status,
            successful=result.successful_syncs,
            failed=result.failed_syncs,
            duration_ms=result.total_duration_ms,
        )
        return result

    def sync_one(
        self,
        connection: Connection,
        batch_id: str,
        batch_log_id: str | None = None,
    ) -> ConnectionSyncSummary:
        """Run one tenant, recording its daily sync status. Never raises."""
        started = time.monotonic()
        log = logger.bind(batch_id=batch_id, tenant_id=connection.tenant_id)
        summary = ConnectionSyncSummary(
            connection_id=connection.id,
            tenant_id=connection.tenant_id,
            connection_name=connection.display_name,
            status="failed",
        )

        try:
            self.store.set_daily_sync_status(connection.id, "running")

            test = self.client.test_connection(connection)
            if not test.success:
                raise TenantSyncFailed(f"Connection test failed: {test.error}")

            tenant = self.orchestrator.sync_connection(
                connection,
                batch_id=batch_id,
                parent_log_id=batch_log_id,
            )
            if not tenant.success:
                raise TenantSyncFailed(f"Opportunities sync failed: {tenant.error}")

            self.store.set_daily_sync_status(connection.id, "success")
            next_sync = self.store.schedule_next_sync(
                connection.id, self.settings.sync_interval_hours
            )

            summary.status = "success"
            summary.opportunities_count = _synced(tenant, "opportunities")
            summary.products_count = _synced(tenant, "products")
            summary.tasks_count = _synced(tenant, "tasks")
            log.info("Connection synced", status=tenant.status, next_sync_at=next_sync.isoformat())

        except Exception as e:
            summary.error = str(e)
            log.error("Connection sync failed", error=summary.error)
            try:
                self.store.set_daily_sync_status(connection.id, "failed", summary.error)
            except Exception as status_error:
                log.error("Could not record failed sync status", error=str(status_error))

        summary.duration_ms = int((time.monotonic() - started) * 1000)
        return summary
