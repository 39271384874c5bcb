"""
Tests for the relational store facade.
"""

from datetime import timedelta

import pytest

from act_billing_sync.models import ConnectionStatus
from act_billing_sync.store import ConcurrentModificationError, opportunities


def add_opportunity(store, act_id, company="Acme Corp", status="active", **extra):
    return store.upsert(
        opportunities,
        {
            "tenant_id": extra.pop("tenant_id", "tenant-1"),
            "act_opportunity_id": act_id,
            "name": f"Opportunity {act_id}",
            "company_name": company,
            "primary_contact": "Jane Doe",
            "status": status,
            **extra,
        },
        "act_opportunity_id",
    )


class TestConnections:
    """Tests for connection queries and state updates."""

    def test_add_and_get(self, store, connection):
        loaded = store.get_connection(connection.id)

        assert loaded.tenant_id == "tenant-1"
        assert loaded.display_name == "Acme Law"
        assert loaded.connection_status == ConnectionStatus.UNTESTED
        assert loaded.is_active is True

    def test_active_connection_is_newest(self, store, connection, clock):
        clock.advance(10)
        newer = store.add_connection(
            "tenant-1", username="u2", password_encrypted="p", database_name="ACME2"
        )
        store.add_connection(
            "tenant-1", username="u3", password_encrypted="p", database_name="OLD", is_active=False
        )

        assert store.get_active_connection("tenant-1").id == newer.id
        assert store.get_active_connection("nobody") is None

    def test_new_connection_replaces_active_one(self, store, connection):
        replacement = store.add_connection(
            "tenant-1", username="u2", password_encrypted="p", database_name="BETA"
        )

        assert store.get_connection(connection.id).is_active is False
        assert store.get_active_connection("tenant-1").id == replacement.id
        assert [c.id for c in store.connections_due_for_sync()] == [replacement.id]

    def test_due_for_sync(self, store, connection, clock):
        disabled = store.add_connection(
            "tenant-2", username="u", password_encrypted="p", database_name="B",
            daily_sync_enabled=False,
        )
        later = store.add_connection(
            "tenant-3", username="u", password_encrypted="p", database_name="C",
        )
        store.schedule_next_sync(later.id, 24)

        due = store.connections_due_for_sync(clock.datetime())
        assert [c.id for c in due] == [connection.id]

        clock.advance(25 * 3600)
        due_ids = {c.id for c in store.connections_due_for_sync(clock.datetime())}
        assert due_ids == {connection.id, later.id}
        assert disabled.id not in due_ids

    def test_status_and_schedule(self, store, connection, clock):
        store.set_daily_sync_status(connection.id, "failed", "boom")
        next_at = store.schedule_next_sync(connection.id, 24)
        store.mark_synced(connection.id)

        loaded = store.get_connection(connection.id)
        assert loaded.daily_sync_status == "failed"
        assert next_at == clock.datetime() + timedelta(hours=24)
        assert loaded.next_sync_at == next_at
        assert loaded.last_sync_at == clock.datetime()


class TestUpsert:
    """Tests for the keyed upsert primitive."""

    def test_conditional_update_rejects_stale_version(self, store):
        outcome = add_opportunity(store, "opp-1")

        with pytest.raises(ConcurrentModificationError):
            store.upsert(
                opportunities,
                {
                    "tenant_id": "tenant-1",
                    "act_opportunity_id": "opp-1",
                    "name": "Changed",
                    "company_name": "Acme Corp",
                    "primary_contact": "Jane Doe",
                },
                "act_opportunity_id",
                expected_version=5,
            )

        assert store.select_one(opportunities, {"id": outcome.id})["name"] == "Opportunity opp-1"

    def test_unknown_columns_ignored(self, store):
        outcome = add_opportunity(store, "opp-1", not_a_column="x")
        assert outcome.created


class TestOpportunityLookups:
    """Tests for parent resolution queries."""

    def test_mappings_exclude_closed_and_deleted(self, store, clock):
        add_opportunity(store, "opp-active")
        add_opportunity(store, "opp-won", status="closed_won")
        add_opportunity(store, "opp-legacy", status="Closed Lost")
        deleted = add_opportunity(store, "opp-deleted")
        store.update_row(opportunities, deleted.id, {"soft_deleted_at": clock.datetime()})
        add_opportunity(store, "opp-other", tenant_id="tenant-2")

        assert set(store.opportunity_mappings("tenant-1")) == {"opp-active"}

    def test_company_index_prefers_oldest(self, store, clock):
        oldest = add_opportunity(store, "opp-1", company="Acme Corp")
        clock.advance(60)
        add_opportunity(store, "opp-2", company="ACME CORP")
        add_opportunity(store, "opp-3", company="   ")

        assert store.opportunity_company_index("tenant-1") == {"acme corp": oldest.id}


class TestAuditLog:
    """Tests for integration log rows."""

    def test_insert_and_update(self, store, clock):
        log_id = store.insert_log({
            "operation_type": "daily_sync_batch",
            "operation_status": "running",
            "request_params": {"total_connections": 2},
            "bogus": "dropped",
        })
        store.update_log(log_id, {"operation_status": "success", "records_processed": 2})

        rows = store.logs(id=log_id)
        assert len(rows) == 1
        assert rows[0]["operation_status"] == "success"
        assert rows[0]["records_processed"] == 2
        assert rows[0]["request_params"] == {"total_connections": 2}
