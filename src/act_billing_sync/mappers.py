"""
Act! -> local record mappers.

Pure functions: each takes a parsed vendor record and returns a
MappingResult holding the normalized row plus diagnostics. Missing or
malformed optional data never raises; a safe default is substituted and
a warning recorded. Only a missing required field (task due date) is
reported through missing_required_fields for the caller to fail.

Custom fields are located with small typed extractors applied in
priority order: known field id, then semantic names, then a heuristic
scan of the generic opportunity_field_N slots.
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable, TypeVar

from act_billing_sync.models import (
    ActOpportunity,
    ActProduct,
    ActTask,
    FeeConfidence,
    FeeParseResult,
    MappingResult,
    SourceType,
    utcnow,
)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

UNKNOWN_COMPANY = "Unknown Company"
UNKNOWN_CONTACT = "Unknown Contact"
UNNAMED_OPPORTUNITY = "Unnamed Opportunity"
UNTITLED_TASK = "Untitled Task"

# Generic custom field slots assigned to retainer data
RETAINER_AMOUNT_FIELD = "opportunity_field_2"
RETAINER_START_FIELD = "opportunity_field_3"
RETAINER_END_FIELD = "opportunity_field_4"
ASSIGNED_FIELDS = (RETAINER_AMOUNT_FIELD, RETAINER_START_FIELD, RETAINER_END_FIELD)
GENERIC_FIELD_PREFIX = "opportunity_field_"

RETAINER_AMOUNT_NAMES = ("retainer_amount", "retainer_monthly", "monthly_retainer", "retainer")
CONTRACT_START_NAMES = ("contract_start_date", "start_date", "contract_start")
CONTRACT_END_NAMES = ("contract_end_date", "end_date", "contract_end")
RETAINER_START_NAMES = ("retainer_start_date", "retainer_start")
RETAINER_END_NAMES = ("retainer_end_date", "retainer_end")

# Upper bound for a scanned value to be taken as a monthly retainer
MAX_SCANNED_AMOUNT = 1_000_000

BILLABLE_ACTIVITY_TYPES = (
    "Billing",
    "To-do",
    "Meeting",
    "Call",
    "Project Work",
    "Consultation",
    "Research",
    "Analysis",
    "Review",
)

BILLABLE_KEYWORDS = (
    "billing",
    "invoice",
    "fee",
    "charge",
    "bill",
    "deliverable",
    "project",
    "work",
    "consultation",
    "meeting",
    "review",
    "analysis",
    "research",
)

NON_BILLABLE_KEYWORDS = (
    "reminder",
    "follow up",
    "follow-up",
    "internal",
    "admin",
    "administrative",
    "overhead",
    "marketing",
    "sales",
)

_AMOUNT = r"(\d+(?:,\d{3})*(?:\.\d{2})?)"

# Ordered: first positive match wins
FEE_PATTERNS = (
    (re.compile(r"\$" + _AMOUNT), FeeConfidence.MEDIUM),
    (re.compile(_AMOUNT + r"\s*(?:dollars?|usd)", re.IGNORECASE), FeeConfidence.MEDIUM),
    *(
        (re.compile(keyword + r"[:\s]*\$?" + _AMOUNT, re.IGNORECASE), FeeConfidence.HIGH)
        for keyword in ("fee", "charge", "bill", "amount")
    ),
)

NON_NUMERIC = re.compile(r"[^0-9.\-]")
ISO_DATE_IN_TEXT = re.compile(r"\d{4}-\d{2}-\d{2}")

ISO_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
SLASH_DATE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
DASH_DATE = re.compile(r"^(\d{1,2})-(\d{1,2})-(\d{4})$")
ISO_SLASH_DATE = re.compile(r"^(\d{4})/(\d{2})/(\d{2})$")


# ---------------------------------------------------------------------------
# Extractors
# ---------------------------------------------------------------------------

def _calendar_date(year: str, month: str, day: str) -> date | None:
    try:
        return date(int(year), int(month), int(day))
    except ValueError:
        return None


def parse_item_number_date(item_number: Any) -> date | None:
    """
    Parse a billing date from a product's item number.

    Accepted: YYYY-MM-DD, MM/DD/YYYY, DD/MM/YYYY, MM-DD-YYYY, DD-MM-YYYY,
    YYYY/MM/DD. The US reading wins when both are valid. Impossible
    calendar dates (2024-02-30) give None.
    """
    if not isinstance(item_number, str) or not item_number.strip():
        return None

    text = item_number.strip()

    match = ISO_DATE.match(text)
    if match:
        return _calendar_date(*match.groups())

    for pattern in (SLASH_DATE, DASH_DATE):
        match = pattern.match(text)
        if match:
            first, second, year = match.groups()
            return _calendar_date(year, first, second) or _calendar_date(year, second, first)

    match = ISO_SLASH_DATE.match(text)
    if match:
        return _calendar_date(*match.groups())

    return None


def validate_billing_date(
    billed_at: date,
    today: date | None = None,
    years: int = 2,
) -> bool:
    """True if billed_at lies within +/- `years` of today."""
    today = today or utcnow().date()

    def shift(n: int) -> date:
        try:
            return today.replace(year=today.year + n)
        except ValueError:
            # Feb 29 -> Feb 28
            return today.replace(year=today.year + n, day=28)

    return shift(-years) <= billed_at <= shift(years)


def parse_datetime(value: Any) -> datetime | None:
    """ISO timestamp -> aware UTC datetime, or None."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def try_numeric_field(value: Any) -> float | None:
    """Numbers as-is; strings stripped of currency/formatting characters."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        cleaned = NON_NUMERIC.sub("", value)
        if not cleaned:
            return None
        try:
            return float(cleaned)
        except ValueError:
            return None
    return None


def try_date_field(value: Any) -> date | None:
    """ISO date/timestamp strings (UTC calendar day) or item-number style dates."""
    if isinstance(value, datetime):
        return parse_datetime(value).date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None

    dt = parse_datetime(value)
    if dt is not None:
        return dt.date()
    return parse_item_number_date(value)


def _first_field(
    fields: dict[str, Any],
    names: Iterable[str],
    extractor: Callable[[Any], T | None],
    accept: Callable[[T], bool] = lambda v: True,
) -> tuple[str, T] | None:
    for name in names:
        if name not in fields:
            continue
        value = extractor(fields[name])
        if value is not None and accept(value):
            return name, value
    return None


def _generic_fields(fields: dict[str, Any]) -> list[str]:
    """Unassigned opportunity_field_N slots, in payload order."""
    return [
        name for name in fields
        if name.startswith(GENERIC_FIELD_PREFIX) and name not in ASSIGNED_FIELDS
    ]


def _looks_like_amount(raw: Any, value: float) -> bool:
    if isinstance(raw, str) and ("T" in raw or ISO_DATE_IN_TEXT.search(raw)):
        return False
    return 0 < value < MAX_SCANNED_AMOUNT


def _looks_like_date(raw: Any) -> bool:
    return isinstance(raw, str) and ("T" in raw or ISO_DATE_IN_TEXT.search(raw) is not None)


# ---------------------------------------------------------------------------
# Opportunity
# ---------------------------------------------------------------------------

def derive_status(stage: Any) -> str:
    """
    Map an Act! stage (name or stage object) to a local status.

    Lost/dead is checked before closed/won so "Closed Lost" is not
    counted as won.
    """
    name = stage.get("name") if isinstance(stage, dict) else stage
    if not isinstance(name, str) or not name:
        return "active"

    lowered = name.lower()
    if "lost" in lowered or "dead" in lowered:
        return "closed_lost"
    if "closed" in lowered or "won" in lowered:
        return "closed_won"
    if "proposal" in lowered or "negotiation" in lowered:
        return "proposal"
    return "active"


def _retainer_amount(fields: dict[str, Any]) -> tuple[str, float] | None:
    found = _first_field(fields, [RETAINER_AMOUNT_FIELD], try_numeric_field, lambda v: v >= 0)
    if found:
        return found

    found = _first_field(fields, RETAINER_AMOUNT_NAMES, try_numeric_field)
    if found:
        return found

    for name in _generic_fields(fields):
        raw = fields[name]
        value = try_numeric_field(raw)
        if value is not None and _looks_like_amount(raw, value):
            return name, value
    return None


def _string_date(value: Any) -> date | None:
    return try_date_field(value) if isinstance(value, str) else None


def map_opportunity(
    opportunity: ActOpportunity,
    tenant_id: str,
    now: datetime | None = None,
) -> MappingResult:
    """Map an Act! opportunity to an `opportunities` row."""
    now = now or utcnow()
    warnings: list[str] = []
    used: list[str] = []

    # Company: primary contact's company -> first company -> contactNames prefix
    primary = opportunity.contacts[0] if opportunity.contacts else None
    company_name = ""
    if primary and primary.company:
        company_name = primary.company
    elif opportunity.companies and opportunity.companies[0].name:
        company_name = opportunity.companies[0].name
        used.append("companies")
    elif opportunity.contact_names:
        company_name = opportunity.contact_names.split(" - ")[0] or opportunity.contact_names
        used.append("contactNames")

    if not company_name.strip():
        warnings.append("No company name found in Act! opportunity")
        company_name = UNKNOWN_COMPANY

    # Contact: primary contact -> contactNames
    primary_contact = ""
    contact_email = None
    if primary:
        primary_contact = primary.display_name or ""
        contact_email = primary.email_address or None
    elif opportunity.contact_names:
        primary_contact = opportunity.contact_names
        used.append("contactNames")

    if not primary_contact.strip():
        warnings.append("No primary contact found in Act! opportunity")
        primary_contact = UNKNOWN_CONTACT

    fields = opportunity.custom_fields
    custom_fields_used: list[str] = []

    retainer = _retainer_amount(fields)
    retainer_amount = None
    if retainer:
        custom_fields_used.append(retainer[0])
        retainer_amount = retainer[1]

    dates: dict[str, date | None] = {}
    for key, names in (
        ("retainer_start_date", [RETAINER_START_FIELD]),
        ("retainer_end_date", [RETAINER_END_FIELD]),
    ):
        found = _first_field(fields, names, _string_date)
        dates[key] = found[1] if found else None
        if found:
            custom_fields_used.append(found[0])

    for key, names in (
        ("contract_start_date", CONTRACT_START_NAMES),
        ("contract_end_date", CONTRACT_END_NAMES),
        ("retainer_start_date", RETAINER_START_NAMES),
        ("retainer_end_date", RETAINER_END_NAMES),
    ):
        if dates.get(key):
            continue
        found = _first_field(fields, names, _string_date)
        dates[key] = found[1] if found else None
        if found:
            custom_fields_used.append(found[0])

    if not dates["retainer_start_date"] or not dates["retainer_end_date"]:
        candidates: list[date] = []
        for name in _generic_fields(fields):
            raw = fields[name]
            if not _looks_like_date(raw):
                continue
            parsed = try_date_field(raw)
            if parsed:
                candidates.append(parsed)
                custom_fields_used.append(name)

        if candidates and not dates["retainer_start_date"]:
            dates["retainer_start_date"] = candidates[0]
        if not dates["retainer_end_date"]:
            if len(candidates) >= 2:
                dates["retainer_end_date"] = candidates[1]
            elif len(candidates) == 1:
                dates["retainer_end_date"] = candidates[0]

    name = (opportunity.name or "").strip() or UNNAMED_OPPORTUNITY
    total_contract_value = opportunity.product_total or 0.0

    record = {
        "tenant_id": tenant_id,
        "act_opportunity_id": opportunity.id,
        "act_raw_data": opportunity.model_dump(mode="json", by_alias=True),
        "name": name,
        "company_name": company_name,
        "primary_contact": primary_contact,
        "contact_email": contact_email,
        "total_contract_value": total_contract_value,
        "retainer_amount": retainer_amount,
        "weighted_value": opportunity.weighted_value,
        "probability": opportunity.probability,
        "contract_start_date": dates["contract_start_date"],
        "contract_end_date": dates["contract_end_date"],
        "retainer_start_date": dates["retainer_start_date"],
        "retainer_end_date": dates["retainer_end_date"],
        "actual_close_date": try_date_field(opportunity.actual_close_date),
        "status": derive_status(opportunity.stage),
        "sync_status": "synced",
        "last_synced_at": now,
        "source": SourceType.ACT_SYNC.value,
    }

    if name == UNNAMED_OPPORTUNITY:
        warnings.append("Opportunity name is missing or generic")
    if company_name == UNKNOWN_COMPANY:
        warnings.append("Company name is missing or unknown")
    if primary_contact == UNKNOWN_CONTACT:
        warnings.append("Primary contact is missing or unknown")
    if not total_contract_value:
        warnings.append("Total contract value is 0 or missing")

    return MappingResult(
        record=record,
        warnings=warnings,
        used_fallback_fields=used + custom_fields_used,
    )


# ---------------------------------------------------------------------------
# Product
# ---------------------------------------------------------------------------

def map_product(
    product: ActProduct,
    tenant_id: str,
    today: date | None = None,
    billing_range_years: int = 2,
) -> MappingResult:
    """
    Map an Act! product to an `invoice_line_items` row.

    The parent opportunity is resolved by the caller; the record carries
    no opportunity_id.
    """
    warnings: list[str] = []
    used: list[str] = []

    billed_at = parse_item_number_date(product.item_number)
    date_in_range = billed_at is None or validate_billing_date(billed_at, today, billing_range_years)
    if not date_in_range:
        warnings.append(
            f"Billing date {billed_at.isoformat()} is outside the billing range, using no date"
        )
        billed_at = None

    name = (product.name or "").strip()
    if not name:
        name = f"Product {product.id}"
        warnings.append("Product name was missing, using fallback name")
        used.append("name")

    price = product.price
    if price is None or price < 0:
        price = 0.0
        warnings.append("Product price was missing or invalid, set to $0")
        used.append("price")

    quantity = product.quantity
    if quantity is None or quantity <= 0:
        quantity = 1.0
        warnings.append("Product quantity was missing or invalid, set to 1")
        used.append("quantity")

    line_total = round(price * quantity, 2)
    if product.total is not None and abs(line_total - product.total) > 0.01:
        warnings.append(f"Calculated total ({line_total}) differs from Act! total ({product.total})")

    record = {
        "tenant_id": tenant_id,
        "act_reference": product.id,
        "description": name,
        "quantity": quantity,
        "unit_rate": price,
        "line_total": line_total,
        "billed_at": billed_at,
        "item_type": "fee",
        "details": product.type or None,
        "source": SourceType.ACT_SYNC.value,
    }

    return MappingResult(
        record=record,
        warnings=warnings,
        used_fallback_fields=used,
        billing_date_valid=date_in_range,
    )


# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------

def _task_text(task: ActTask) -> str:
    return f"{task.subject or ''} {task.details or ''}"


def is_task_billable(task: ActTask) -> bool:
    """
    A billable activity type always counts. Otherwise deny keywords win
    over allow keywords.
    """
    if task.activity_type_name in BILLABLE_ACTIVITY_TYPES:
        return True

    text = _task_text(task).lower()
    if any(keyword in text for keyword in NON_BILLABLE_KEYWORDS):
        return False
    return any(keyword in text for keyword in BILLABLE_KEYWORDS)


def parse_fee(task: ActTask) -> FeeParseResult:
    """Find the first positive money amount in subject + details."""
    subject = task.subject or ""
    text = _task_text(task)

    for pattern, confidence in FEE_PATTERNS:
        for match in pattern.finditer(text):
            try:
                amount = float(match.group(1).replace(",", ""))
            except ValueError:
                continue
            if amount > 0:
                return FeeParseResult(
                    amount=amount,
                    source="subject" if match.start() < len(subject) else "details",
                    confidence=confidence,
                    raw_text=match.group(0),
                )

    return FeeParseResult()


def _priority(name: str | None) -> str:
    lowered = (name or "").lower()
    if "high" in lowered or "urgent" in lowered:
        return "high"
    if "low" in lowered:
        return "low"
    return "medium"


@dataclass
class OpportunityLookup:
    """Active local opportunities keyed by Act! id and by company name."""

    by_act_id: dict[str, str] = field(default_factory=dict)
    by_company: dict[str, str] = field(default_factory=dict)

    def for_product(self, product: ActProduct) -> str | None:
        if not product.opportunity_id:
            return None
        return self.by_act_id.get(product.opportunity_id)

    def for_task(self, task: ActTask) -> str | None:
        """Explicit opportunity link first, then the first linked company."""
        if task.opportunities:
            local_id = self.by_act_id.get(task.opportunities[0].id)
            if local_id:
                return local_id

        if task.companies and task.companies[0].name:
            return self.by_company.get(task.companies[0].name.strip().lower())
        return None

    def __len__(self) -> int:
        return len(self.by_act_id)


def map_task(
    task: ActTask,
    tenant_id: str,
    lookup: OpportunityLookup | None = None,
    now: datetime | None = None,
) -> MappingResult:
    """Map an Act! task to a `deliverables` row."""
    now = now or utcnow()
    warnings: list[str] = []
    missing: list[str] = []

    title = (task.subject or "").strip() or UNTITLED_TASK
    billable = is_task_billable(task)
    if not billable:
        warnings.append(f'Task "{title}" filtered out as non-billable')

    fee = parse_fee(task)
    if fee.confidence == FeeConfidence.LOW and billable:
        warnings.append(f'Could not parse fee amount from task "{title}"')

    opportunity_id = lookup.for_task(task) if lookup is not None else None
    if not opportunity_id and billable:
        warnings.append(f'No opportunity found for task "{title}"')

    due = parse_datetime(task.end_time)
    if due is None:
        missing.append("due_date")

    if task.is_cleared:
        status = "completed"
    elif due is not None and due > now:
        status = "in_progress"
    else:
        status = "pending"

    record = {
        "tenant_id": tenant_id,
        "act_task_id": task.id,
        "act_series_id": task.series_id,
        "act_raw_data": task.model_dump(mode="json", by_alias=True),
        "title": title,
        "description": task.details or None,
        "opportunity_id": opportunity_id,
        "due_date": due,
        "start_time": parse_datetime(task.start_time),
        "end_time": due,
        "status": status,
        "priority": _priority(task.activity_priority_name),
        "fee_amount": fee.amount or 0.0,
        "fee_confidence": fee.confidence.value,
        "is_billable": billable,
        "act_activity_type": task.activity_type_name,
        "act_activity_type_id": task.activity_type_id,
        "is_completed": task.is_cleared,
        "has_reminder": task.is_alarmed,
        "sync_status": "synced",
        "last_synced_at": now,
        "source": SourceType.ACT_SYNC.value,
    }

    if title == UNTITLED_TASK:
        warnings.append("Task title is missing or generic")

    return MappingResult(
        record=record,
        warnings=warnings,
        missing_required_fields=missing,
        activity_type_matched=task.activity_type_name in BILLABLE_ACTIVITY_TYPES,
        fee_parsed=fee.amount is not None,
    )
