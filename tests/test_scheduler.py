"""
Tests for the scheduled batch runner.
"""

from datetime import timedelta

import pytest

from act_billing_sync.scheduler import BatchScheduler


@pytest.fixture
def scheduler(store, client, orchestrator, settings, clock):
    return BatchScheduler(store, client, orchestrator, settings, clock=clock.datetime, sleep=clock.sleep)


@pytest.fixture
def second_connection(store):
    return store.add_connection(
        "tenant-2",
        username="api-user",
        password_encrypted="wrong",
        database_name="BETA",
        connection_name="Beta LLC",
        api_base_url="https://act.test/act.web.api",
    )


class TestBatchScheduler:
    """Tests for BatchScheduler."""

    def test_failed_tenant_does_not_stop_batch(
        self, scheduler, store, connection, second_connection, seeded_server, clock
    ):
        seeded_server.bad_databases = {"BETA"}

        result = scheduler.run_batch()

        assert result.total_connections == 2
        assert result.successful_syncs == 1
        assert result.failed_syncs == 1
        assert result.status == "partial_success"

        by_tenant = {r.tenant_id: r for r in result.sync_results}
        assert by_tenant["tenant-1"].status == "success"
        assert by_tenant["tenant-1"].opportunities_count == 1
        assert by_tenant["tenant-1"].products_count == 1
        assert by_tenant["tenant-1"].tasks_count == 1
        assert by_tenant["tenant-2"].status == "failed"
        assert by_tenant["tenant-2"].error == "Connection test failed: Authentication failed"

        good = store.get_connection(connection.id)
        assert good.daily_sync_status == "success"
        assert good.next_sync_at == clock.datetime() + timedelta(hours=24)

        bad = store.get_connection(second_connection.id)
        assert bad.daily_sync_status == "failed"
        assert bad.next_sync_at is None

    def test_batch_audit_rows(self, scheduler, store, connection, second_connection, seeded_server):
        seeded_server.bad_databases = {"BETA"}

        result = scheduler.run_batch()

        batch_logs = store.logs(is_batch_operation=True)
        assert len(batch_logs) == 1
        batch_log = batch_logs[0]
        assert batch_log["operation_type"] == "daily_sync_batch"
        assert batch_log["operation_status"] == "partial_success"
        assert batch_log["sync_batch_id"] == result.batch_id
        assert batch_log["records_processed"] == 1
        assert batch_log["records_failed"] == 1
        assert batch_log["completed_at"] is not None

        tenant_logs = store.logs(operation_type="sync_full")
        assert [log["parent_log_id"] for log in tenant_logs] == [batch_log["id"]]
        assert tenant_logs[0]["sync_batch_id"] == result.batch_id

    def test_empty_batch_still_logged(self, scheduler, store):
        result = scheduler.run_batch()

        assert result.total_connections == 0
        assert result.status == "success"
        assert store.logs(is_batch_operation=True)[0]["operation_status"] == "success"

    def test_opportunities_failure_marks_tenant_failed(
        self, scheduler, store, connection, seeded_server
    ):
        seeded_server.failures["/api/opportunities"] = 500

        result = scheduler.run_batch()

        summary = result.sync_results[0]
        assert summary.status == "failed"
        assert summary.error.startswith("Opportunities sync failed: ")
        assert store.get_connection(connection.id).daily_sync_error == summary.error

    def test_unexpected_exception_is_contained(
        self, scheduler, orchestrator, store, connection, second_connection, seeded_server, monkeypatch
    ):
        def explode(connection, **kwargs):
            if connection.tenant_id == "tenant-1":
                raise RuntimeError("worker crashed")
            return real_sync(connection, **kwargs)

        real_sync = orchestrator.sync_connection
        monkeypatch.setattr(orchestrator, "sync_connection", explode)

        result = scheduler.run_batch()

        by_tenant = {r.tenant_id: r for r in result.sync_results}
        assert by_tenant["tenant-1"].error == "worker crashed"
        assert by_tenant["tenant-2"].status == "success"

    def test_only_due_connections_run(self, scheduler, store, connection, second_connection, seeded_server):
        store.schedule_next_sync(second_connection.id, 12)

        result = scheduler.run_batch()

        assert [r.tenant_id for r in result.sync_results] == ["tenant-1"]

    def test_pause_between_tenants(
        self, scheduler, settings, connection, second_connection, seeded_server, clock
    ):
        scheduler.settings = settings.model_copy(update={"inter_tenant_delay_seconds": 2.0})

        scheduler.run_batch()

        assert clock.sleeps.count(2.0) == 1

    def test_summary_shape(self, scheduler, connection, seeded_server):
        summary = scheduler.run_batch().to_summary()

        assert summary["totalConnections"] == 1
        assert summary["successfulSyncs"] == 1
        entry = summary["syncResults"][0]
        assert entry["tenantId"] == "tenant-1"
        assert entry["connectionName"] == "Acme Law"
        assert entry["productsCount"] == 1
        assert summary["completedAt"] is not None

    def test_replaced_connection_does_not_reuse_token(
        self, scheduler, store, client, connection, seeded_server
    ):
        assert client.get_opportunities(connection).success
        assert seeded_server.auth_calls == 1

        replacement = store.add_connection(
            "tenant-1",
            username="api-user",
            password_encrypted="wrong",
            database_name="BETA",
            api_base_url=connection.api_base_url,
        )
        seeded_server.bad_databases = {"BETA"}

        result = scheduler.run_batch()

        assert result.total_connections == 1
        summary = result.sync_results[0]
        assert summary.connection_id == replacement.id
        assert summary.status == "failed"
        assert seeded_server.auth_calls == 2
        assert store.get_connection(connection.id).is_active is False
