"""
Unified data schema for lease rate acquisition.

This module defines the normalized data models used across all provider
clients, parsers and the matcher, ensuring a consistent rate record
regardless of which funder the pricing came from.

Money is always carried as integer minor currency units (pence).
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import ClassVar, Dict, List, Optional, Any, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
import hashlib
import json
import uuid


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ProviderCode(str, Enum):
    """Supported funders."""
    LEX = "lex"
    OGILVIE = "ogilvie"
    DRIVALIA = "drivalia"
    FLEET_MARQUE = "fleet_marque"
    VENUS = "venus"
    ALD = "ald"


class ContractType(str, Enum):
    """Lease structure, determines VAT treatment."""
    CH = "CH"        # Contract Hire (with maintenance)
    CHNM = "CHNM"    # Contract Hire, no maintenance
    PCH = "PCH"      # Personal Contract Hire
    PCHNM = "PCHNM"  # Personal Contract Hire, no maintenance
    SS = "SS"        # Salary Sacrifice

    @property
    def is_personal(self) -> bool:
        """Personal contracts are quoted VAT-inclusive."""
        return self in (ContractType.PCH, ContractType.PCHNM)


class PaymentPlan(str, Enum):
    """Payment profiles across funders."""
    MONTHLY_IN_ADVANCE = "monthly_in_advance"
    QUARTERLY_IN_ADVANCE = "quarterly_in_advance"
    ANNUAL_IN_ADVANCE = "annual_in_advance"
    SPREAD_3_DOWN = "spread_3_down"
    SPREAD_6_DOWN = "spread_6_down"
    SPREAD_9_DOWN = "spread_9_down"
    SPREAD_12_DOWN = "spread_12_down"
    THREE_DOWN_TERMINAL_PAUSE = "three_down_terminal_pause"
    SIX_DOWN_TERMINAL_PAUSE = "six_down_terminal_pause"
    NINE_DOWN_TERMINAL_PAUSE = "nine_down_terminal_pause"
    NO_DEPOSIT_BENEFIT_CAR = "no_deposit_benefit_car"


# Number of monthly rentals taken as the initial payment
PAYMENT_PLAN_MULTIPLIERS: Dict[PaymentPlan, int] = {
    PaymentPlan.MONTHLY_IN_ADVANCE: 1,
    PaymentPlan.QUARTERLY_IN_ADVANCE: 3,
    PaymentPlan.ANNUAL_IN_ADVANCE: 12,
    PaymentPlan.SPREAD_3_DOWN: 3,
    PaymentPlan.SPREAD_6_DOWN: 6,
    PaymentPlan.SPREAD_9_DOWN: 9,
    PaymentPlan.SPREAD_12_DOWN: 12,
    PaymentPlan.THREE_DOWN_TERMINAL_PAUSE: 3,
    PaymentPlan.SIX_DOWN_TERMINAL_PAUSE: 6,
    PaymentPlan.NINE_DOWN_TERMINAL_PAUSE: 9,
    PaymentPlan.NO_DEPOSIT_BENEFIT_CAR: 0,
}

DEFAULT_PLAN_MULTIPLIER = 1


def plan_multiplier(plan: Optional[PaymentPlan]) -> int:
    """Initial-payment multiplier for a plan, 1 when unknown."""
    if plan is None:
        return DEFAULT_PLAN_MULTIPLIER
    return PAYMENT_PLAN_MULTIPLIERS.get(plan, DEFAULT_PLAN_MULTIPLIER)


def payment_plan_for_initial_months(months: Optional[int]) -> PaymentPlan:
    """Map an up-front rental count (1, 3, 6, ...) to a payment plan."""
    plans = {
        1: PaymentPlan.MONTHLY_IN_ADVANCE,
        3: PaymentPlan.SPREAD_3_DOWN,
        6: PaymentPlan.SPREAD_6_DOWN,
        9: PaymentPlan.SPREAD_9_DOWN,
        12: PaymentPlan.SPREAD_12_DOWN,
    }
    return plans.get(months, PaymentPlan.SPREAD_6_DOWN)


class FuelType(str, Enum):
    """Vehicle fuel types."""
    PETROL = "petrol"
    DIESEL = "diesel"
    HYBRID = "hybrid"
    PLUGIN_HYBRID = "plugin_hybrid"
    ELECTRIC = "electric"
    UNKNOWN = "unknown"


class Transmission(str, Enum):
    """Vehicle transmission types."""
    MANUAL = "manual"
    AUTOMATIC = "automatic"
    UNKNOWN = "unknown"


class MatchMethod(str, Enum):
    """How a CAP code was resolved."""
    EXACT_MAPPING = "exact_mapping"
    CONFIRMED_CACHE = "confirmed_cache"
    FUZZY_AUTO = "fuzzy_auto"
    MANUAL = "manual"
    NONE = "none"


class MatchStatus(str, Enum):
    """Review state of a stored match."""
    CONFIRMED = "confirmed"
    PENDING = "pending"
    MANUAL = "manual"
    REJECTED = "rejected"


class ImportStatus(str, Enum):
    """Lifecycle of an import batch."""
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ProgressStage(str, Enum):
    """Stages reported by export/scrape runs."""
    STARTING = "starting"
    AUTHENTICATING = "authenticating"
    SAVING_FILTERS = "saving_filters"
    COUNTING = "counting"
    PREPARING = "preparing"
    DOWNLOADING = "downloading"
    SCRAPING = "scraping"
    IMPORTING = "importing"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


def _reject_float_money(v: Any) -> Any:
    if isinstance(v, float):
        raise ValueError(f"Monetary values must be integer minor units, got float {v}")
    return v


# === Session ===

class Session(BaseModel):
    """Captured authentication material for one provider."""
    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    provider: ProviderCode
    cookie_jar: str = Field(default="", description="Raw Cookie header string")
    csrf_token: Optional[str] = None
    profile: Dict[str, Any] = Field(default_factory=dict)
    issued_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime
    valid: bool = True

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """True once expires_at has passed."""
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return self.valid and not self.is_expired(now)

    @property
    def remaining(self) -> timedelta:
        return self.expires_at - datetime.now(timezone.utc)

    def cookies(self) -> Dict[str, str]:
        """Split the raw Cookie header into a name/value dict."""
        jar = {}
        for part in self.cookie_jar.split(';'):
            if '=' not in part:
                continue
            name, value = part.split('=', 1)
            jar[name.strip()] = value.strip()
        return jar


# === Requests and raw responses ===

class VehicleIdentity(BaseModel):
    """Vehicle as described by a request or provider row."""
    manufacturer: str = ""
    model: str = ""
    variant: str = ""
    cap_code: Optional[str] = None
    manufacturer_id: Optional[str] = None
    model_id: Optional[str] = None
    variant_id: Optional[str] = None
    derivative_name: Optional[str] = None

    @property
    def display_name(self) -> str:
        return ' '.join(p for p in (self.manufacturer, self.model, self.variant) if p)


class QuoteRequest(BaseModel):
    """
    A single quote to obtain from a provider.

    Frozen: once handed to a provider client it cannot change.
    """
    model_config = ConfigDict(frozen=True)

    vehicle: VehicleIdentity
    term: int = Field(..., ge=12, le=84, description="Contract term in months")
    annual_mileage: int = Field(..., ge=1000, le=100000)
    contract_type: ContractType = ContractType.CHNM
    payment_plan: PaymentPlan = PaymentPlan.SPREAD_3_DOWN
    broker_otr_price_minor: Optional[int] = Field(default=None, description="Broker override OTR price")

    @field_validator('broker_otr_price_minor', mode='before')
    @classmethod
    def reject_float_money(cls, v: Any) -> Any:
        return _reject_float_money(v)

    @property
    def custom_otrp(self) -> bool:
        return self.broker_otr_price_minor is not None

    @property
    def label(self) -> str:
        return f"{self.vehicle.display_name or self.vehicle.cap_code or '?'} {self.term}m/{self.annual_mileage}"


class RawProviderResponse(BaseModel):
    """Provider payload handed straight to the parser."""
    provider: ProviderCode
    schema_version: str = "1"
    payload: Union[Dict[str, Any], List[Dict[str, Any]]]
    received_at: datetime = Field(default_factory=utc_now)

    @property
    def rows(self) -> List[Dict[str, Any]]:
        if isinstance(self.payload, list):
            return self.payload
        return [self.payload]


# === Canonical rate ===

class CanonicalRate(BaseModel):
    """
    Normalized lease rate.

    All monetary fields are integer pence. ``total_rental_minor`` is the sum
    of lease and service rental when both are present, otherwise the
    provider-supplied total. Values derived by heuristic (VAT multiplier,
    payment-plan multiplier) are listed in ``estimated_fields``.
    """
    provider_code: ProviderCode
    cap_code: Optional[str] = None

    manufacturer: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    variant: str = ""

    contract_type: ContractType
    term: int = Field(..., ge=1)
    annual_mileage: int = Field(..., ge=0)
    payment_plan: PaymentPlan = PaymentPlan.MONTHLY_IN_ADVANCE

    lease_rental_minor: Optional[int] = None
    service_rental_minor: Optional[int] = None
    total_rental_minor: Optional[int] = None
    initial_payment_minor: Optional[int] = None
    otr_price_minor: Optional[int] = None
    p11d_minor: Optional[int] = None
    co2_gkm: Optional[int] = None

    fuel_type: FuelType = FuelType.UNKNOWN
    transmission: Transmission = Transmission.UNKNOWN
    body_style: Optional[str] = None
    model_year: Optional[str] = None
    derivative_name: Optional[str] = None

    import_batch_id: Optional[str] = None
    unmatched: bool = True
    match_confidence: Optional[float] = None
    vat_inclusive: bool = False
    estimated_fields: List[str] = Field(default_factory=list)
    quote_reference: Optional[str] = None
    extras: Dict[str, Any] = Field(default_factory=dict)

    @field_validator(
        'lease_rental_minor', 'service_rental_minor', 'total_rental_minor',
        'initial_payment_minor', 'otr_price_minor', 'p11d_minor',
        mode='before',
    )
    @classmethod
    def reject_float_money(cls, v: Any) -> Any:
        return _reject_float_money(v)

    @field_validator('manufacturer', 'model', 'variant')
    @classmethod
    def strip_names(cls, v: str) -> str:
        return v.strip() if v else v

    @model_validator(mode='after')
    def compute_total(self) -> 'CanonicalRate':
        """Derive the total rental from its parts."""
        if self.lease_rental_minor is not None and self.service_rental_minor is not None:
            self.total_rental_minor = self.lease_rental_minor + self.service_rental_minor
        elif self.total_rental_minor is None and self.lease_rental_minor is not None:
            self.total_rental_minor = self.lease_rental_minor
        return self

    @property
    def has_price(self) -> bool:
        return self.total_rental_minor is not None

    @property
    def rate_key(self) -> str:
        """Stable identity of a price point within an import."""
        data = {
            'provider': self.provider_code.value,
            'manufacturer': self.manufacturer.upper(),
            'model': self.model.upper(),
            'variant': self.variant.upper(),
            'contract': self.contract_type.value,
            'term': self.term,
            'mileage': self.annual_mileage,
            'plan': self.payment_plan.value,
        }
        hash_str = json.dumps(data, sort_keys=True)
        return hashlib.md5(hash_str.encode()).hexdigest()[:12]

    @property
    def display_name(self) -> str:
        return ' '.join(p for p in (self.manufacturer, self.model, self.variant) if p)

    def mark_estimated(self, field: str) -> None:
        if field not in self.estimated_fields:
            self.estimated_fields.append(field)


# === Matching ===

class VehicleMatch(BaseModel):
    """Outcome of resolving a vehicle to a CAP code."""
    source_key: str
    source_provider: Optional[str] = None
    manufacturer: str = ""
    model: str = ""
    variant: str = ""
    p11d_minor: Optional[int] = None

    cap_code: Optional[str] = None
    confidence: float = Field(default=0, ge=0, le=100)
    method: MatchMethod = MatchMethod.NONE
    status: MatchStatus = MatchStatus.PENDING

    matched_manufacturer: Optional[str] = None
    matched_model: Optional[str] = None
    matched_variant: Optional[str] = None
    matched_p11d_minor: Optional[int] = None
    matched_at: Optional[datetime] = None

    @property
    def is_usable(self) -> bool:
        """Only confirmed and manual matches may populate a rate's CAP code."""
        return self.cap_code is not None and self.status in (MatchStatus.CONFIRMED, MatchStatus.MANUAL)


# === Import batches ===

class ImportBatch(BaseModel):
    """
    One bulk import of provider rates.

    Finalized exactly once; immutable after ``completed_at`` is set.
    """
    id: str
    provider_code: ProviderCode
    contract_type: ContractType
    file_name: Optional[str] = None
    file_hash: Optional[str] = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    total_rows: int = 0
    success_rows: int = 0
    error_rows: int = 0
    unique_cap_codes: int = 0
    unmatched_rows: int = 0
    status: ImportStatus = ImportStatus.PROCESSING
    error_log: List[str] = Field(default_factory=list)
    is_latest: bool = True

    MAX_ERROR_LOG: ClassVar[int] = 50

    @property
    def is_finalized(self) -> bool:
        return self.completed_at is not None

    def record_error(self, message: str) -> None:
        """Count an error row, keeping only a bounded sample of messages."""
        if self.is_finalized:
            raise ValueError(f"Import batch {self.id} is already finalized")
        self.error_rows += 1
        if len(self.error_log) < self.MAX_ERROR_LOG:
            self.error_log.append(message)

    def finalize(self, failed: bool = False) -> 'ImportBatch':
        """Close the batch. Failed if asked to, or if more than half the rows errored."""
        if self.is_finalized:
            raise ValueError(f"Import batch {self.id} is already finalized")
        if failed or (self.total_rows and self.error_rows > self.total_rows / 2):
            self.status = ImportStatus.FAILED
        else:
            self.status = ImportStatus.COMPLETED
        self.completed_at = datetime.now(timezone.utc)
        return self


# === Progress and results ===

class RunProgress(BaseModel):
    """Ephemeral progress of a single export or scrape run."""
    current_stage: ProgressStage = ProgressStage.STARTING
    current_index: int = 0
    total: int = 0
    vehicles_found: int = 0
    status: str = "running"
    error: Optional[str] = None
    current_make: Optional[str] = None
    current_model: Optional[str] = None

    def advance(self, index: int, stage: Optional[ProgressStage] = None) -> 'RunProgress':
        """Move forward; the index never regresses."""
        self.current_index = max(self.current_index, index)
        if stage is not None:
            self.current_stage = stage
        return self


class ItemOutcome(BaseModel):
    """What happened to one attempted batch item."""
    index: int
    ok: bool
    value: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    attempts: int = 1


class BatchResult(BaseModel):
    """
    Outcome of processing a batch of items.

    ``results`` holds the successful values in submission order;
    ``outcomes`` has one entry per attempted item, failures included.
    """
    results: List[Any] = Field(default_factory=list)
    outcomes: List[ItemOutcome] = Field(default_factory=list)
    success_count: int = 0
    error_count: int = 0
    attempted: int = 0
    total: int = 0
    sample_errors: List[str] = Field(default_factory=list)
    aborted: bool = False
    abort_reason: Optional[str] = None
    stopped: bool = False

    @property
    def summary(self) -> str:
        text = f"Success: {self.success_count}, Errors: {self.error_count}, Total: {self.total}"
        if self.aborted:
            text += f" (aborted: {self.abort_reason})"
        elif self.stopped:
            text += " (stopped)"
        return text


class QuoteResult(BaseModel):
    """A priced quote from a single-quote provider."""
    request: QuoteRequest
    rate: CanonicalRate
    quote_id: Optional[str] = None
    line_number: Optional[int] = None
    used_fleet_discount: bool = False
    raw: Optional[Dict[str, Any]] = None


class RunSummary(BaseModel):
    """Result of an orchestrated export or scrape."""
    provider: ProviderCode
    batch_id: Optional[str] = None
    rows_or_vehicles_found: int = 0
    progress: RunProgress = Field(default_factory=RunProgress)
    import_batch: Optional[ImportBatch] = None


class FleetDiscountTerm(BaseModel):
    """A discounted vehicle listing from the fleet-discount portal."""
    cap_code: str
    manufacturer: str
    model: str
    derivative: str
    list_price_minor: Optional[int] = None
    discount_percent: Optional[float] = None
    discounted_price_minor: Optional[int] = None
    co2_gkm: Optional[int] = None
    deal_url: Optional[str] = None
    scraped_at: datetime = Field(default_factory=utc_now)


# === Free-text converters ===

def fuel_type_from_string(s: Optional[str]) -> FuelType:
    """Convert string to FuelType enum."""
    if not s:
        return FuelType.UNKNOWN
    s_lower = s.lower()
    if 'plug' in s_lower or 'phev' in s_lower:
        return FuelType.PLUGIN_HYBRID
    if 'electric' in s_lower or s_lower in ('ev', 'bev'):
        return FuelType.ELECTRIC
    if 'hybrid' in s_lower:
        return FuelType.HYBRID
    if 'diesel' in s_lower:
        return FuelType.DIESEL
    if 'petrol' in s_lower or 'gasoline' in s_lower:
        return FuelType.PETROL
    return FuelType.UNKNOWN


def transmission_from_string(s: Optional[str]) -> Transmission:
    """Convert string to Transmission enum."""
    if not s:
        return Transmission.UNKNOWN
    s_lower = s.lower()
    if 'auto' in s_lower or 'cvt' in s_lower or 'dct' in s_lower or 'dsg' in s_lower:
        return Transmission.AUTOMATIC
    if 'manual' in s_lower:
        return Transmission.MANUAL
    return Transmission.UNKNOWN


def contract_type_from_string(s: Optional[str], default: Optional[ContractType] = None) -> Optional[ContractType]:
    """Accept either the short code (CHNM) or a product name."""
    if not s:
        return default
    value = s.strip()
    try:
        return ContractType(value.upper())
    except ValueError:
        pass
    lower = value.lower()
    no_maint = 'no maintenance' in lower or 'without maint' in lower
    if 'salary' in lower:
        return ContractType.SS
    if 'personal' in lower:
        return ContractType.PCHNM if no_maint else ContractType.PCH
    if 'contract hire' in lower:
        return ContractType.CHNM if no_maint else ContractType.CH
    return default
