"""
Pydantic models for Act! API payloads and sync bookkeeping.

Vendor models parse leniently: a malformed optional value becomes None
instead of failing validation, so the mappers can substitute defaults
and warn. Internal models carry connection state and sync results.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

class ConnectionStatus(str, Enum):
    UNTESTED = "untested"
    CONNECTED = "connected"
    FAILED = "failed"
    ERROR = "error"
    EXPIRED = "expired"


class SourceType(str, Enum):
    ACT_SYNC = "act_sync"
    CONTRACT_UPLOAD = "contract_upload"
    MANUAL = "manual"


class OperationType(str, Enum):
    SYNC_OPPORTUNITIES = "sync_opportunities"
    SYNC_PRODUCTS = "sync_products"
    SYNC_TASKS = "sync_tasks"
    SYNC_FULL = "sync_full"
    ANALYSIS = "analysis"
    TEST_CONNECTION = "test_connection"
    DAILY_SYNC_BATCH = "daily_sync_batch"


class SyncErrorType(str, Enum):
    VALIDATION = "validation"
    DATABASE = "database"
    API = "api"
    MAPPING = "mapping"


class FeeConfidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """
    Ensure datetime has UTC timezone.

    SQLite hands back naive datetimes; everything is stored as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _lenient_float(v: Any) -> float | None:
    """Coerce numeric-looking values to float, anything else to None."""
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        return float(v)
    if isinstance(v, str):
        try:
            return float(v.strip())
        except ValueError:
            return None
    return None


# ---------------------------------------------------------------------------
# Act! payloads
# ---------------------------------------------------------------------------

class ActModel(BaseModel):
    """Base for vendor payloads: camelCase aliases, unknown keys kept."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class ActContact(ActModel):
    """Contact linked to an opportunity or task."""

    id: str | None = None
    display_name: str | None = Field(None, alias="displayName")
    email_address: str | None = Field(None, alias="emailAddress")
    company: str | None = None


class ActCompany(ActModel):
    """Company linked to an opportunity or task."""

    id: str | None = None
    name: str | None = None


class ActLinkedOpportunity(ActModel):
    """Opportunity reference embedded in a task."""

    id: str
    name: str | None = None


class ActOpportunity(ActModel):
    """Act! opportunity (a contract being billed)."""

    id: str
    name: str | None = None
    contact_names: str | None = Field(None, alias="contactNames")
    product_total: float | None = Field(None, alias="productTotal")
    weighted_value: float | None = Field(None, alias="weightedValue")
    probability: float | None = None
    stage: Any = None
    actual_close_date: str | None = Field(None, alias="actualCloseDate")
    estimated_close_date: str | None = Field(None, alias="estimatedCloseDate")
    created: str | None = None
    edited: str | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict, alias="customFields")
    contacts: list[ActContact] = Field(default_factory=list)
    companies: list[ActCompany] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def stringify_id(cls, v: Any) -> str:
        return str(v)

    @field_validator("product_total", "weighted_value", "probability", mode="before")
    @classmethod
    def lenient_numbers(cls, v: Any) -> float | None:
        return _lenient_float(v)

    @field_validator("custom_fields", mode="before")
    @classmethod
    def default_custom_fields(cls, v: Any) -> dict[str, Any]:
        return v if isinstance(v, dict) else {}

    @field_validator("contacts", "companies", mode="before")
    @classmethod
    def default_lists(cls, v: Any) -> list:
        return v if isinstance(v, list) else []

    @property
    def stage_name(self) -> str | None:
        """Stage as a string, whether Act! sent a name or a stage object."""
        if isinstance(self.stage, str):
            return self.stage
        if isinstance(self.stage, dict):
            return self.stage.get("name")
        return None


class ActProduct(ActModel):
    """Act! product attached to an opportunity (becomes an invoice line item)."""

    id: str
    name: str | None = None
    price: float | None = None
    quantity: float | None = None
    total: float | None = None
    cost: float | None = None
    item_number: str | None = Field(None, alias="itemNumber")
    opportunity_id: str | None = Field(None, alias="opportunityID")
    product_id: str | None = Field(None, alias="productID")
    type: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def stringify_id(cls, v: Any) -> str:
        return str(v)

    @field_validator("opportunity_id", "item_number", mode="before")
    @classmethod
    def stringify_optional(cls, v: Any) -> str | None:
        return None if v is None else str(v)

    @field_validator("price", "quantity", "total", "cost", mode="before")
    @classmethod
    def lenient_numbers(cls, v: Any) -> float | None:
        return _lenient_float(v)


class ActTask(ActModel):
    """Act! task/activity (candidate deliverable)."""

    id: str
    subject: str | None = None
    details: str | None = None
    activity_type_id: int | None = Field(None, alias="activityTypeId")
    activity_type_name: str | None = Field(None, alias="activityTypeName")
    activity_priority_name: str | None = Field(None, alias="activityPriorityName")
    start_time: str | None = Field(None, alias="startTime")
    end_time: str | None = Field(None, alias="endTime")
    is_cleared: bool = Field(False, alias="isCleared")
    is_alarmed: bool = Field(False, alias="isAlarmed")
    series_id: str | None = Field(None, alias="seriesID")
    companies: list[ActCompany] = Field(default_factory=list)
    contacts: list[ActContact] = Field(default_factory=list)
    opportunities: list[ActLinkedOpportunity] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def stringify_id(cls, v: Any) -> str:
        return str(v)

    @field_validator("activity_type_id", mode="before")
    @classmethod
    def lenient_int(cls, v: Any) -> int | None:
        number = _lenient_float(v)
        return int(number) if number is not None else None

    @field_validator("is_cleared", "is_alarmed", mode="before")
    @classmethod
    def default_false(cls, v: Any) -> bool:
        return bool(v)

    @field_validator("companies", "contacts", "opportunities", mode="before")
    @classmethod
    def default_lists(cls, v: Any) -> list:
        return v if isinstance(v, list) else []


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------

class Connection(BaseModel):
    """One tenant's Act! credentials and sync state."""

    id: str
    tenant_id: str
    username: str
    password_encrypted: str
    database_name: str
    region: str = "us"
    api_base_url: str | None = None
    connection_name: str | None = None

    cached_bearer_token: str | None = None
    token_expires_at: datetime | None = None
    token_last_refreshed_at: datetime | None = None

    is_active: bool = True
    connection_status: ConnectionStatus = ConnectionStatus.UNTESTED
    connection_error: str | None = None
    total_api_calls: int = 0

    daily_sync_enabled: bool = True
    daily_sync_status: str | None = None
    daily_sync_error: str | None = None
    last_sync_at: datetime | None = None
    next_sync_at: datetime | None = None

    @field_validator("connection_status", mode="before")
    @classmethod
    def default_status(cls, v: Any) -> Any:
        return v or ConnectionStatus.UNTESTED

    @field_validator("total_api_calls", mode="before")
    @classmethod
    def default_calls(cls, v: Any) -> int:
        return v or 0

    @field_validator(
        "token_expires_at", "token_last_refreshed_at", "last_sync_at", "next_sync_at"
    )
    @classmethod
    def utc_timestamps(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v)

    def base_url(self, default: str | None = None) -> str:
        """API root for this tenant (custom URL, region default, or fallback)."""
        if self.api_base_url:
            return self.api_base_url.rstrip("/")
        if default:
            return default.rstrip("/")
        return f"https://api{self.region}.act.com/act.web.api"

    @property
    def display_name(self) -> str:
        return self.connection_name or self.database_name


# ---------------------------------------------------------------------------
# API results
# ---------------------------------------------------------------------------

class ApiResult(BaseModel):
    """Typed outcome of one logical Act! API call."""

    success: bool
    data: Any = None
    error: str | None = None
    status_code: int | None = None
    rate_limited: bool = False
    attempts: int = 0


# ---------------------------------------------------------------------------
# Mapping results
# ---------------------------------------------------------------------------

class FeeParseResult(BaseModel):
    """Monetary fee found in task text."""

    amount: float | None = None
    currency: str = "USD"
    source: str = "default"
    confidence: FeeConfidence = FeeConfidence.LOW
    raw_text: str | None = None


class MappingResult(BaseModel):
    """Normalized row produced by a mapper, with diagnostics."""

    record: dict[str, Any]
    warnings: list[str] = Field(default_factory=list)
    used_fallback_fields: list[str] = Field(default_factory=list)
    missing_required_fields: list[str] = Field(default_factory=list)

    # Entity-specific diagnostics
    billing_date_valid: bool | None = None
    activity_type_matched: bool | None = None
    fee_parsed: bool | None = None


# ---------------------------------------------------------------------------
# Sync results
# ---------------------------------------------------------------------------

class SyncError(BaseModel):
    """One record-level (or stage-level) failure."""

    error_type: SyncErrorType
    error_message: str
    record_id: str | None = None
    error_details: dict[str, Any] = Field(default_factory=dict)


class SyncOperationResult(BaseModel):
    """Counts, errors and timings for one sync stage or tenant run."""

    operation_type: OperationType
    batch_id: str
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    duration_ms: int | None = None

    processed: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0
    skipped: int = 0

    errors: list[SyncError] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    success: bool = False

    def add_error(
        self,
        error_type: SyncErrorType,
        message: str,
        record_id: str | None = None,
        **details: Any,
    ) -> None:
        """Record a failure and count it."""
        self.errors.append(
            SyncError(
                error_type=error_type,
                error_message=message,
                record_id=record_id,
                error_details=details,
            )
        )
        self.failed += 1

    def complete(self, now: datetime | None = None) -> "SyncOperationResult":
        """Stamp completion time and compute majority-success."""
        self.completed_at = now or utcnow()
        self.duration_ms = int((self.completed_at - self.started_at).total_seconds() * 1000)
        self.success = self.failed < self.processed or (self.processed == 0 and not self.errors)
        return self

    @property
    def error_count(self) -> int:
        return len(self.errors)


class TenantSyncResult(BaseModel):
    """Outcome of one tenant's pipeline run."""

    tenant_id: str
    connection_id: str
    operation_type: OperationType
    success: bool = False
    status: str = "failed"
    error: str | None = None
    summary: SyncOperationResult
    stages: dict[str, SyncOperationResult] = Field(default_factory=dict)
    analysis: dict[str, Any] | None = None

    def count(self, stage: str, field: str = "created") -> int:
        result = self.stages.get(stage)
        return getattr(result, field) if result else 0


class ConnectionSyncSummary(BaseModel):
    """Per-connection entry in a batch result."""

    connection_id: str
    tenant_id: str
    connection_name: str
    status: str
    error: str | None = None
    opportunities_count: int = 0
    products_count: int = 0
    tasks_count: int = 0
    duration_ms: int = 0


class BatchSyncResult(BaseModel):
    """Outcome of one scheduled batch across all due tenants."""

    batch_id: str
    total_connections: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    sync_results: list[ConnectionSyncSummary] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    total_duration_ms: int | None = None

    @property
    def status(self) -> str:
        return "success" if self.failed_syncs == 0 else "partial_success"

    def to_summary(self) -> dict[str, Any]:
        """JSON-ready summary for the batch entry point."""
        return {
            "batchId": self.batch_id,
            "totalConnections": self.total_connections,
            "successfulSyncs": self.successful_syncs,
            "failedSyncs": self.failed_syncs,
            "syncResults": [
                {
                    "connectionId": r.connection_id,
                    "tenantId": r.tenant_id,
                    "connectionName": r.connection_name,
                    "status": r.status,
                    "error": r.error,
                    "opportunitiesCount": r.opportunities_count,
                    "productsCount": r.products_count,
                    "tasksCount": r.tasks_count,
                    "duration": r.duration_ms,
                }
                for r in self.sync_results
            ],
            "startedAt": self.started_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "totalDuration": self.total_duration_ms,
        }
