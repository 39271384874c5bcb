"""
Act! Billing Sync

Pulls opportunities, products and tasks from Act! CRM for many tenants
and upserts them as contracts, invoice line items and deliverables.

Features:
- Per-tenant bearer token reuse and rate limiting
- Field-preserving, idempotent upserts keyed on Act! ids
- Required/optional stage pipeline with per-record error isolation
- Scheduled batch runs with per-tenant failure isolation
- One audit row per run

Quick Start:
    pip install act-billing-sync
    act-sync init-db
    act-sync add-connection --tenant acme --username api --password ... --database ACME
    act-sync sync --tenant acme
"""

from act_billing_sync.client import (
    ActAPIError,
    ActAuthError,
    ActClient,
    ActNotFoundError,
    ActRateLimitError,
    ActServerError,
)
from act_billing_sync.config import SyncSettings, load_settings
from act_billing_sync.mappers import map_opportunity, map_product, map_task
from act_billing_sync.models import (
    ActOpportunity,
    ActProduct,
    ActTask,
    ApiResult,
    BatchSyncResult,
    Connection,
    MappingResult,
    SyncOperationResult,
    TenantSyncResult,
)
from act_billing_sync.orchestrator import NoActiveConnectionError, SyncOrchestrator
from act_billing_sync.rate_limiter import RateLimitExceeded, TenantRateLimiter
from act_billing_sync.scheduler import BatchScheduler
from act_billing_sync.store import SyncStore
from act_billing_sync.tokens import TokenCache
from act_billing_sync.upsert import UpsertEngine

__version__ = "1.0.0"
__all__ = [
    # Pipeline
    "SyncOrchestrator",
    "BatchScheduler",
    "NoActiveConnectionError",

    # API client
    "ActClient",
    "ActAPIError",
    "ActAuthError",
    "ActNotFoundError",
    "ActRateLimitError",
    "ActServerError",
    "TokenCache",

    # Models
    "ActOpportunity",
    "ActProduct",
    "ActTask",
    "ApiResult",
    "BatchSyncResult",
    "Connection",
    "MappingResult",
    "SyncOperationResult",
    "TenantSyncResult",

    # Mapping and persistence
    "map_opportunity",
    "map_product",
    "map_task",
    "SyncStore",
    "UpsertEngine",

    # Configuration
    "SyncSettings",
    "load_settings",

    # Rate limiting
    "TenantRateLimiter",
    "RateLimitExceeded",
]
