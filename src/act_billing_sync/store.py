"""
Relational store for connections, synced entities and the audit log.

SQLAlchemy Core tables plus a SyncStore facade implementing the
persistence contract the engine needs:

- select_one(table, filter) -> row | None
- upsert(table, record, conflict_key) -> UpsertOutcome(id, created)
- insert_log(row) / update_log(id, values)

Upserts are single INSERT ... ON CONFLICT DO UPDATE statements keyed on
the vendor id. Every row carries a row_version; passing expected_version
makes the update conditional so a concurrent write is detected instead
of silently overwritten.
"""

import threading
import uuid
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator

import structlog
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Engine,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    create_engine,
    or_,
    select,
    update,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.pool import StaticPool

from act_billing_sync.models import Connection, ConnectionStatus, ensure_utc, utcnow

logger = structlog.get_logger(__name__)


metadata = MetaData()


def _timestamps() -> list[Column]:
    return [
        Column("created_at", DateTime(timezone=True), nullable=False),
        Column("updated_at", DateTime(timezone=True), nullable=False),
        Column("row_version", Integer, nullable=False, default=1),
    ]


def _sync_tracking() -> list[Column]:
    return [
        Column("source", String(50), nullable=False, default="act_sync"),
        Column("last_seen_at", DateTime(timezone=True), nullable=True),
        Column("soft_deleted_at", DateTime(timezone=True), nullable=True),
    ]


connections = Table(
    "connections",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("tenant_id", String(64), nullable=False, index=True),
    Column("username", String(200), nullable=False),
    Column("password_encrypted", Text, nullable=False),
    Column("database_name", String(200), nullable=False),
    Column("region", String(20), nullable=False, default="us"),
    Column("api_base_url", String(500), nullable=True),
    Column("connection_name", String(200), nullable=True),
    Column("cached_bearer_token", Text, nullable=True),
    Column("token_expires_at", DateTime(timezone=True), nullable=True),
    Column("token_last_refreshed_at", DateTime(timezone=True), nullable=True),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("connection_status", String(20), nullable=False, default="untested"),
    Column("connection_error", Text, nullable=True),
    Column("total_api_calls", Integer, nullable=False, default=0),
    Column("daily_sync_enabled", Boolean, nullable=False, default=True),
    Column("daily_sync_status", String(20), nullable=True),
    Column("daily_sync_error", Text, nullable=True),
    Column("last_sync_at", DateTime(timezone=True), nullable=True),
    Column("next_sync_at", DateTime(timezone=True), nullable=True),
    *_timestamps(),
)

opportunities = Table(
    "opportunities",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("tenant_id", String(64), nullable=False, index=True),
    Column("act_opportunity_id", String(100), nullable=False, unique=True),
    Column("act_raw_data", JSON, nullable=True),
    Column("name", String(500), nullable=False),
    Column("company_name", String(500), nullable=False),
    Column("primary_contact", String(500), nullable=False),
    Column("contact_email", String(320), nullable=True),
    Column("total_contract_value", Float, nullable=False, default=0.0),
    Column("retainer_amount", Float, nullable=True),
    Column("weighted_value", Float, nullable=True),
    Column("probability", Float, nullable=True),
    Column("contract_start_date", Date, nullable=True),
    Column("contract_end_date", Date, nullable=True),
    Column("retainer_start_date", Date, nullable=True),
    Column("retainer_end_date", Date, nullable=True),
    Column("actual_close_date", Date, nullable=True),
    Column("status", String(50), nullable=False, default="active"),
    Column("sync_status", String(20), nullable=True),
    Column("last_synced_at", DateTime(timezone=True), nullable=True),
    *_sync_tracking(),
    *_timestamps(),
)

invoice_line_items = Table(
    "invoice_line_items",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("tenant_id", String(64), nullable=False, index=True),
    Column("act_reference", String(100), nullable=False, unique=True),
    Column("opportunity_id", String(36), nullable=True, index=True),
    Column("description", Text, nullable=False),
    Column("details", Text, nullable=True),
    Column("quantity", Float, nullable=False, default=1.0),
    Column("unit_rate", Float, nullable=False, default=0.0),
    Column("line_total", Float, nullable=False, default=0.0),
    Column("billed_at", Date, nullable=True),
    Column("item_type", String(50), nullable=False, default="fee"),
    Column("line_number", Integer, nullable=False, default=1),
    Column("invoice_id", String(36), nullable=True),
    Column("deliverable_id", String(36), nullable=True),
    Column("service_period_start", Date, nullable=True),
    Column("service_period_end", Date, nullable=True),
    *_sync_tracking(),
    *_timestamps(),
)

deliverables = Table(
    "deliverables",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("tenant_id", String(64), nullable=False, index=True),
    Column("act_task_id", String(100), nullable=False, unique=True),
    Column("act_series_id", String(100), nullable=True),
    Column("act_raw_data", JSON, nullable=True),
    Column("title", String(500), nullable=False),
    Column("description", Text, nullable=True),
    Column("opportunity_id", String(36), nullable=True, index=True),
    Column("invoice_id", String(36), nullable=True),
    Column("due_date", DateTime(timezone=True), nullable=True),
    Column("start_time", DateTime(timezone=True), nullable=True),
    Column("end_time", DateTime(timezone=True), nullable=True),
    Column("status", String(20), nullable=False, default="pending"),
    Column("priority", String(20), nullable=False, default="medium"),
    Column("fee_amount", Float, nullable=False, default=0.0),
    Column("fee_confidence", String(10), nullable=True),
    Column("is_billable", Boolean, nullable=False, default=False),
    Column("act_activity_type", String(100), nullable=True),
    Column("act_activity_type_id", Integer, nullable=True),
    Column("is_completed", Boolean, nullable=False, default=False),
    Column("has_reminder", Boolean, nullable=False, default=False),
    Column("sync_status", String(20), nullable=True),
    Column("last_synced_at", DateTime(timezone=True), nullable=True),
    *_sync_tracking(),
    *_timestamps(),
)

integration_logs = Table(
    "integration_logs",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("tenant_id", String(64), nullable=True, index=True),
    Column("connection_id", String(36), nullable=True),
    Column("database_name", String(200), nullable=True),
    Column("operation_type", String(50), nullable=False),
    Column("operation_status", String(20), nullable=False),
    Column("api_endpoint", String(200), nullable=True),
    Column("http_method", String(10), nullable=True),
    Column("entity_type", String(50), nullable=True),
    Column("records_processed", Integer, nullable=False, default=0),
    Column("records_created", Integer, nullable=False, default=0),
    Column("records_updated", Integer, nullable=False, default=0),
    Column("records_failed", Integer, nullable=False, default=0),
    Column("records_skipped", Integer, nullable=False, default=0),
    Column("warning_count", Integer, nullable=False, default=0),
    Column("error_message", Text, nullable=True),
    Column("error_details", JSON, nullable=True),
    Column("request_params", JSON, nullable=True),
    Column("response_data", JSON, nullable=True),
    Column("response_time_ms", Integer, nullable=True),
    Column("sync_batch_id", String(100), nullable=True, index=True),
    Column("parent_log_id", String(36), nullable=True),
    Column("is_batch_operation", Boolean, nullable=False, default=False),
    Column("started_at", DateTime(timezone=True), nullable=True),
    Column("completed_at", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

TABLES = {
    table.name: table
    for table in (connections, opportunities, invoice_line_items, deliverables, integration_logs)
}

# Opportunity statuses that take an opportunity out of the product/task mapping
CLOSED_STATUSES = ("closed_won", "closed_lost", "Closed", "Closed Won", "Closed Lost")


class ConcurrentModificationError(Exception):
    """Raised when a conditional upsert finds the row changed since it was read."""

    def __init__(self, table: str, conflict_value: Any, expected_version: int):
        super().__init__(
            f"{table} row {conflict_value} changed concurrently "
            f"(expected version {expected_version})"
        )
        self.table = table
        self.conflict_value = conflict_value
        self.expected_version = expected_version


@dataclass
class UpsertOutcome:
    """Result of one keyed upsert."""
    id: str
    created: bool


def new_id() -> str:
    return str(uuid.uuid4())


class SyncStore:
    """
    Facade over the relational store.

    Usage:
        store = SyncStore.from_url("sqlite:///act_billing_sync.db")
        store.create_all()

        conn = store.get_active_connection("tenant-1")
        outcome = store.upsert("opportunities", record, "act_opportunity_id")
    """

    def __init__(self, engine: Engine, clock: Callable[[], datetime] | None = None):
        self.engine = engine
        self._now = clock or utcnow
        # SQLite connections are shared across the product fetch workers
        self._lock = threading.RLock() if engine.dialect.name == "sqlite" else nullcontext()

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "SyncStore":
        """Create a store from a database URL (in-memory SQLite shares one connection)."""
        engine_kwargs: dict[str, Any] = {}
        if url in ("sqlite://", "sqlite:///:memory:"):
            engine_kwargs = {
                "connect_args": {"check_same_thread": False},
                "poolclass": StaticPool,
            }
        return cls(create_engine(url, **engine_kwargs), **kwargs)

    def create_all(self) -> None:
        metadata.create_all(self.engine)

    @contextmanager
    def _begin(self) -> Iterator[Any]:
        with self._lock, self.engine.begin() as conn:
            yield conn

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        with self._lock, self.engine.connect() as conn:
            yield conn

    # -------------------------------------------------------------------------
    # Generic contract
    # -------------------------------------------------------------------------

    @staticmethod
    def _table(table: str | Table) -> Table:
        return TABLES[table] if isinstance(table, str) else table

    def _insert(self, table: Table):
        if self.engine.dialect.name == "postgresql":
            return postgresql.insert(table)
        return sqlite.insert(table)

    def select_one(self, table: str | Table, filters: dict[str, Any]) -> dict[str, Any] | None:
        """Return the first row matching all column == value filters."""
        table = self._table(table)
        stmt = select(table).where(
            and_(*(table.c[name] == value for name, value in filters.items()))
        ).limit(1)

        with self._connect() as conn:
            row = conn.execute(stmt).mappings().first()
        return dict(row) if row else None

    def select_all(self, table: str | Table, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        table = self._table(table)
        stmt = select(table)
        if filters:
            stmt = stmt.where(and_(*(table.c[name] == value for name, value in filters.items())))

        with self._connect() as conn:
            return [dict(row) for row in conn.execute(stmt).mappings()]

    def upsert(
        self,
        table: str | Table,
        record: dict[str, Any],
        conflict_key: str,
        expected_version: int | None = None,
    ) -> UpsertOutcome:
        """
        Insert or update one row keyed on conflict_key.

        On update the row keeps its id and created_at and its row_version is
        bumped. With expected_version, the update only applies if the stored
        row_version still matches.

        Raises:
            ConcurrentModificationError: expected_version did not match
        """
        table = self._table(table)
        conflict_col = table.c[conflict_key]
        values = {k: v for k, v in record.items() if k in table.c}
        conflict_value = values[conflict_key]
        now = self._now()

        with self._begin() as conn:
            existing_id = conn.execute(
                select(table.c.id).where(conflict_col == conflict_value)
            ).scalar_one_or_none()

            insert_values = {
                **values,
                "id": values.get("id") or new_id(),
                "created_at": values.get("created_at") or now,
                "updated_at": now,
                "row_version": 1,
            }
            update_values: dict[str, Any] = {
                k: v for k, v in values.items()
                if k not in ("id", conflict_key, "created_at", "row_version")
            }
            update_values["updated_at"] = now
            update_values["row_version"] = table.c.row_version + 1

            stmt = self._insert(table).values(**insert_values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[conflict_col],
                set_=update_values,
                where=(
                    table.c.row_version == expected_version
                    if expected_version is not None
                    else None
                ),
            ).returning(table.c.id)

            row = conn.execute(stmt).first()

        if row is None:
            raise ConcurrentModificationError(table.name, conflict_value, expected_version or 0)

        return UpsertOutcome(id=row.id, created=existing_id is None)

    def update_row(self, table: str | Table, row_id: str, values: dict[str, Any]) -> None:
        """Plain update by primary key (bumps row_version where present)."""
        table = self._table(table)
        values = dict(values)
        if "row_version" in table.c:
            values["row_version"] = table.c.row_version + 1
            values.setdefault("updated_at", self._now())

        with self._begin() as conn:
            conn.execute(update(table).where(table.c.id == row_id).values(**values))

    # -------------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------------

    def add_connection(self, tenant_id: str, **fields: Any) -> Connection:
        """
        Create a connection row (used by the CLI and tests).

        An active connection replaces the tenant's previous one: earlier
        active rows are deactivated in the same transaction.
        """
        now = self._now()
        row = {
            "id": fields.pop("id", None) or new_id(),
            "tenant_id": tenant_id,
            "created_at": now,
            "updated_at": now,
            "row_version": 1,
            **fields,
        }
        with self._begin() as conn:
            replaced = 0
            if row.get("is_active", True):
                replaced = conn.execute(
                    update(connections)
                    .where(
                        connections.c.tenant_id == tenant_id,
                        connections.c.is_active.is_(True),
                    )
                    .values(
                        is_active=False,
                        updated_at=now,
                        row_version=connections.c.row_version + 1,
                    )
                ).rowcount
            conn.execute(connections.insert().values(**row))

        logger.info(
            "Connection added",
            tenant_id=tenant_id,
            connection_id=row["id"],
            replaced=replaced,
        )
        return self.get_connection(row["id"])

    def get_connection(self, connection_id: str) -> Connection | None:
        row = self.select_one(connections, {"id": connection_id})
        return Connection.model_validate(row) if row else None

    def get_active_connection(self, tenant_id: str) -> Connection | None:
        """The single active connection driving sync for a tenant."""
        stmt = (
            select(connections)
            .where(connections.c.tenant_id == tenant_id, connections.c.is_active.is_(True))
            .order_by(connections.c.created_at.desc())
            .limit(1)
        )
        with self._connect() as conn:
            row = conn.execute(stmt).mappings().first()
        return Connection.model_validate(dict(row)) if row else None

    def _update_connection(self, connection_id: str, **values: Any) -> None:
        self.update_row(connections, connection_id, values)

    def update_connection_status(
        self,
        connection_id: str,
        status: ConnectionStatus,
        error: str | None = None,
    ) -> None:
        self._update_connection(
            connection_id,
            connection_status=ConnectionStatus(status).value,
            connection_error=error,
        )

    def update_connection_token(
        self,
        connection_id: str,
        token: str,
        expires_at: datetime,
        refreshed_at: datetime | None = None,
    ) -> None:
        self._update_connection(
            connection_id,
            cached_bearer_token=token,
            token_expires_at=expires_at,
            token_last_refreshed_at=refreshed_at or self._now(),
        )

    def increment_api_calls(self, connection_id: str) -> None:
        with self._begin() as conn:
            conn.execute(
                update(connections)
                .where(connections.c.id == connection_id)
                .values(total_api_calls=connections.c.total_api_calls + 1)
            )

    def connections_due_for_sync(self, now: datetime | None = None) -> list[Connection]:
        """
        Sync-enabled connections whose next_sync_at has passed (or is unset).

        Only the newest active connection of each tenant is considered,
        the same one get_active_connection returns.
        """
        now = ensure_utc(now or self._now())
        stmt = (
            select(connections)
            .where(connections.c.is_active.is_(True))
            .order_by(connections.c.created_at.desc())
        )
        with self._connect() as conn:
            rows = conn.execute(stmt).mappings().all()

        newest: dict[str, Connection] = {}
        for row in rows:
            newest.setdefault(row["tenant_id"], Connection.model_validate(dict(row)))

        due = [
            c for c in reversed(newest.values())
            if c.daily_sync_enabled and (c.next_sync_at is None or c.next_sync_at <= now)
        ]
        return sorted(due, key=lambda c: (c.next_sync_at is not None, c.next_sync_at or now))

    def set_daily_sync_status(
        self,
        connection_id: str,
        status: str,
        error: str | None = None,
    ) -> None:
        self._update_connection(connection_id, daily_sync_status=status, daily_sync_error=error)

    def schedule_next_sync(self, connection_id: str, interval_hours: float) -> datetime:
        next_at = self._now() + timedelta(hours=interval_hours)
        self._update_connection(connection_id, next_sync_at=next_at)
        return next_at

    def mark_synced(self, connection_id: str) -> None:
        self._update_connection(connection_id, last_sync_at=self._now())

    # -------------------------------------------------------------------------
    # Opportunity lookups
    # -------------------------------------------------------------------------

    def _active_opportunities(self, tenant_id: str) -> list[dict[str, Any]]:
        stmt = select(
            opportunities.c.id,
            opportunities.c.act_opportunity_id,
            opportunities.c.company_name,
        ).where(
            opportunities.c.tenant_id == tenant_id,
            opportunities.c.soft_deleted_at.is_(None),
            or_(
                opportunities.c.status.is_(None),
                opportunities.c.status.notin_(CLOSED_STATUSES),
            ),
        ).order_by(opportunities.c.created_at)

        with self._connect() as conn:
            return [dict(row) for row in conn.execute(stmt).mappings()]

    def opportunity_mappings(self, tenant_id: str) -> dict[str, str]:
        """Act! opportunity id -> local id, for active opportunities only."""
        return {
            row["act_opportunity_id"]: row["id"]
            for row in self._active_opportunities(tenant_id)
        }

    def opportunity_company_index(self, tenant_id: str) -> dict[str, str]:
        """Lower-cased company name -> local id of its oldest active opportunity."""
        index: dict[str, str] = {}
        for row in self._active_opportunities(tenant_id):
            name = (row["company_name"] or "").strip().lower()
            if name:
                index.setdefault(name, row["id"])
        return index

    # -------------------------------------------------------------------------
    # Audit log
    # -------------------------------------------------------------------------

    def insert_log(self, row: dict[str, Any]) -> str:
        values = {k: v for k, v in row.items() if k in integration_logs.c}
        values.setdefault("id", new_id())
        values.setdefault("created_at", self._now())

        with self._begin() as conn:
            conn.execute(integration_logs.insert().values(**values))
        return values["id"]

    def update_log(self, log_id: str, values: dict[str, Any]) -> None:
        values = {k: v for k, v in values.items() if k in integration_logs.c}
        with self._begin() as conn:
            conn.execute(
                update(integration_logs).where(integration_logs.c.id == log_id).values(**values)
            )

    def logs(self, **filters: Any) -> list[dict[str, Any]]:
        return self.select_all(integration_logs, filters)

    @staticmethod
    def as_utc(value: datetime | None) -> datetime | None:
        return ensure_utc(value)
