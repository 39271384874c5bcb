"""
Tests for field-preserving upserts.
"""

import pytest

from act_billing_sync.store import ConcurrentModificationError, invoice_line_items, opportunities
from act_billing_sync.upsert import ENTITY_SPECS, UpsertEngine, merge_record


def opportunity_record(**overrides):
    record = {
        "tenant_id": "tenant-1",
        "act_opportunity_id": "opp-1",
        "name": "Acme Retainer 2025",
        "company_name": "Acme Corp",
        "primary_contact": "Jane Doe",
        "contact_email": "jane@acme.test",
        "total_contract_value": 30000.0,
        "retainer_amount": 2500.0,
        "status": "active",
        "source": "act_sync",
    }
    record.update(overrides)
    return record


def line_item_record(**overrides):
    record = {
        "tenant_id": "tenant-1",
        "act_reference": "prod-1",
        "opportunity_id": "local-1",
        "description": "Monthly Retainer",
        "details": "Service",
        "quantity": 1.0,
        "unit_rate": 2500.0,
        "line_total": 2500.0,
        "item_type": "fee",
        "source": "act_sync",
    }
    record.update(overrides)
    return record


@pytest.fixture
def engine(store, clock):
    return UpsertEngine(store, clock=clock.datetime)


class TestMergeRecord:
    """Tests for the pure merge rules."""

    def test_empty_incoming_keeps_existing(self):
        spec = ENTITY_SPECS["invoice_line_items"]
        merged, preserved = merge_record(
            spec,
            {"service_period_start": None, "service_period_end": "2025-07-31", "source": "act_sync"},
            {"service_period_start": "2025-07-01", "service_period_end": "2025-06-30", "source": "act_sync"},
        )

        assert merged["service_period_start"] == "2025-07-01"
        assert merged["service_period_end"] == "2025-07-31"
        assert preserved == ["service_period_start"]

    def test_foreign_row_keeps_all_preservable(self):
        spec = ENTITY_SPECS["invoice_line_items"]
        merged, _ = merge_record(
            spec,
            {"service_period_start": "2025-08-01", "source": "act_sync"},
            {"service_period_start": "2025-07-01", "source": "contract_upload"},
        )

        assert merged["service_period_start"] == "2025-07-01"
        assert merged["source"] == "contract_upload"

    def test_opportunity_fields_follow_feed(self):
        merged, preserved = merge_record(
            ENTITY_SPECS["opportunities"],
            {"contact_email": None, "retainer_amount": None, "source": "act_sync"},
            {"contact_email": "old@acme.test", "retainer_amount": 2500.0, "source": "act_sync"},
        )

        assert merged["contact_email"] is None
        assert merged["retainer_amount"] is None
        assert preserved == []

    def test_links_always_preserved(self):
        spec = ENTITY_SPECS["invoice_line_items"]
        merged, preserved = merge_record(
            spec,
            {"invoice_id": "inv-new", "details": "Svc"},
            {"invoice_id": "inv-1", "details": "Retainer for July, per engagement letter"},
        )

        assert merged["invoice_id"] == "inv-1"
        assert merged["details"] == "Retainer for July, per engagement letter"
        assert set(preserved) == {"invoice_id", "details"}

    def test_created_at_never_written(self):
        merged, _ = merge_record(ENTITY_SPECS["deliverables"], {"created_at": "x", "title": "T"}, {})
        assert "created_at" not in merged


class TestUpsertEngine:
    """Tests for UpsertEngine against the store."""

    def test_insert_then_update_is_idempotent(self, engine, store, clock):
        first = engine.upsert("opportunities", opportunity_record())
        clock.advance(60)
        second = engine.upsert("opportunities", opportunity_record(total_contract_value=36000.0))

        assert first.created is True
        assert second.created is False
        assert second.id == first.id

        rows = store.select_all(opportunities)
        assert len(rows) == 1
        row = rows[0]
        assert row["total_contract_value"] == 36000.0
        assert row["row_version"] == 2
        assert store.as_utc(row["created_at"]) < store.as_utc(row["updated_at"])
        assert engine.get_stats() == {"created": 1, "updated": 1, "restored": 0, "conflicts": 0}

    def test_value_cleared_in_act_is_cleared_locally(self, engine, store):
        engine.upsert("opportunities", opportunity_record())
        engine.upsert("opportunities", opportunity_record(contact_email=None, retainer_amount=None))

        row = store.select_one(opportunities, {"act_opportunity_id": "opp-1"})
        assert row["contact_email"] is None
        assert row["retainer_amount"] is None

    def test_preserves_local_values_when_feed_is_empty(self, engine, store):
        outcome = engine.upsert("invoice_line_items", line_item_record())
        store.update_row(invoice_line_items, outcome.id, {"deliverable_id": "del-1"})

        engine.upsert("invoice_line_items", line_item_record(deliverable_id=None))

        row = store.select_one(invoice_line_items, {"id": outcome.id})
        assert row["deliverable_id"] == "del-1"

    def test_foreign_row_keeps_ownership(self, engine, store):
        store.upsert(
            opportunities,
            opportunity_record(source="contract_upload", retainer_amount=2750.0),
            "act_opportunity_id",
        )

        engine.upsert("opportunities", opportunity_record(retainer_amount=3000.0))

        row = store.select_one(opportunities, {"act_opportunity_id": "opp-1"})
        assert row["retainer_amount"] == 3000.0
        assert row["source"] == "contract_upload"

    def test_invoice_link_and_line_number_survive_resync(self, engine, store):
        outcome = engine.upsert("invoice_line_items", line_item_record())
        store.update_row(invoice_line_items, outcome.id, {"invoice_id": "inv-1", "line_number": 4})

        engine.upsert("invoice_line_items", line_item_record(unit_rate=3000.0, line_total=3000.0))

        row = store.select_one(invoice_line_items, {"id": outcome.id})
        assert row["invoice_id"] == "inv-1"
        assert row["line_number"] == 4
        assert row["unit_rate"] == 3000.0

    def test_restores_soft_deleted_row(self, engine, store, clock):
        outcome = engine.upsert("opportunities", opportunity_record())
        store.update_row(opportunities, outcome.id, {"soft_deleted_at": clock.datetime()})

        engine.upsert("opportunities", opportunity_record())

        row = store.select_one(opportunities, {"id": outcome.id})
        assert row["soft_deleted_at"] is None
        assert row["last_seen_at"] is not None
        assert engine.get_stats()["restored"] == 1

    def test_concurrent_edit_is_merged_not_lost(self, engine, store, monkeypatch):
        """A UI edit landing between read and write forces a re-merge."""
        outcome = engine.upsert("invoice_line_items", line_item_record())
        original_upsert = store.upsert
        calls = []

        def racing_upsert(table, record, conflict_key, expected_version=None):
            calls.append(expected_version)
            if len(calls) == 1:
                store.update_row(invoice_line_items, outcome.id, {"invoice_id": "inv-9"})
            return original_upsert(table, record, conflict_key, expected_version=expected_version)

        monkeypatch.setattr(store, "upsert", racing_upsert)

        engine.upsert("invoice_line_items", line_item_record(unit_rate=2600.0))

        row = store.select_one(invoice_line_items, {"id": outcome.id})
        assert row["invoice_id"] == "inv-9"
        assert row["unit_rate"] == 2600.0
        assert calls == [1, 2]
        assert engine.get_stats()["conflicts"] == 1

    def test_persistent_conflict_raises(self, engine, store, monkeypatch):
        outcome = engine.upsert("opportunities", opportunity_record())
        original_upsert = store.upsert

        def always_racing(table, record, conflict_key, expected_version=None):
            store.update_row(opportunities, outcome.id, {"probability": 50.0})
            return original_upsert(table, record, conflict_key, expected_version=expected_version)

        monkeypatch.setattr(store, "upsert", always_racing)

        with pytest.raises(ConcurrentModificationError):
            engine.upsert("opportunities", opportunity_record())

        assert engine.get_stats()["conflicts"] == 2

    def test_opportunity_lookup(self, engine):
        engine.upsert("opportunities", opportunity_record())

        lookup = engine.opportunity_lookup("tenant-1")

        assert set(lookup.by_act_id) == {"opp-1"}
        assert set(lookup.by_company) == {"acme corp"}
