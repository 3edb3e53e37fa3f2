"""Core module for the vendor rate acquisition pipeline."""

from .errors import (
    RatefeedError,
    AuthenticationFailed,
    SessionExpired,
    ProtocolStructureError,
    TransientNetworkError,
    ValidationError,
    MatchNotFound,
)

from .schema import (
    ProviderCode,
    ContractType,
    PaymentPlan,
    FuelType,
    Transmission,
    MatchMethod,
    MatchStatus,
    ImportStatus,
    ProgressStage,
    Session,
    VehicleIdentity,
    QuoteRequest,
    QuoteResult,
    RawProviderResponse,
    CanonicalRate,
    VehicleMatch,
    ImportBatch,
    RunProgress,
    RunSummary,
    BatchResult,
    ItemOutcome,
    FleetDiscountTerm,
    plan_multiplier,
    payment_plan_for_initial_months,
    fuel_type_from_string,
    transmission_from_string,
    contract_type_from_string,
)

from .config import (
    ClientType,
    Credentials,
    ProviderConfig,
    RateLimitConfig,
    SessionConfig,
    UrlConfig,
    ConfigManager,
    get_config_manager,
    get_data_dir,
    get_provider_config,
    get_default_configs,
)

from .parsing import (
    ColumnMapping,
    decode_text,
    format_money_minor,
    parse_money_minor,
    parse_percent,
    parse_int,
    read_csv_rows,
)

from .session_store import SessionStore

from .storage import (
    RateStore,
    MatchStore,
    CapMapping,
    CapMappingStore,
    ReferenceVehicle,
    ReferenceVehicleStore,
    MatchAuditLog,
)

from .rate_limiter import RateLimitPolicy

from .batch import (
    StopSignal,
    process_batch,
    run_with_retry,
    ScrapeQueue,
    QueueItem,
    Priority,
    QueueItemStatus,
)

from .matcher import VehicleMatcher

from .importer import (
    ContractMeta,
    ParseOutcome,
    RateParser,
    RateImporter,
    make_batch_id,
)

from .browser import (
    BrowserManager,
    capture_session,
)

from .base_client import ProviderClient

from .registry import (
    ProviderRegistry,
    register_provider,
    get_client,
    list_providers,
)

from .orchestrator import (
    Orchestrator,
    create_client,
    default_matcher,
    run_single_quote,
    run_batch,
    run_bulk_export,
    run_scrape,
)

__all__ = [
    # Errors
    "RatefeedError",
    "AuthenticationFailed",
    "SessionExpired",
    "ProtocolStructureError",
    "TransientNetworkError",
    "ValidationError",
    "MatchNotFound",
    # Schema classes
    "ProviderCode",
    "ContractType",
    "PaymentPlan",
    "FuelType",
    "Transmission",
    "MatchMethod",
    "MatchStatus",
    "ImportStatus",
    "ProgressStage",
    "Session",
    "VehicleIdentity",
    "QuoteRequest",
    "QuoteResult",
    "RawProviderResponse",
    "CanonicalRate",
    "VehicleMatch",
    "ImportBatch",
    "RunProgress",
    "RunSummary",
    "BatchResult",
    "ItemOutcome",
    "FleetDiscountTerm",
    # Converters
    "plan_multiplier",
    "payment_plan_for_initial_months",
    "fuel_type_from_string",
    "transmission_from_string",
    "contract_type_from_string",
    # Config
    "ClientType",
    "Credentials",
    "ProviderConfig",
    "RateLimitConfig",
    "SessionConfig",
    "UrlConfig",
    "ConfigManager",
    "get_config_manager",
    "get_data_dir",
    "get_provider_config",
    "get_default_configs",
    # Parsing
    "ColumnMapping",
    "decode_text",
    "format_money_minor",
    "parse_money_minor",
    "parse_percent",
    "parse_int",
    "read_csv_rows",
    # Stores
    "SessionStore",
    "RateStore",
    "MatchStore",
    "CapMapping",
    "CapMappingStore",
    "ReferenceVehicle",
    "ReferenceVehicleStore",
    "MatchAuditLog",
    # Batch processing
    "RateLimitPolicy",
    "StopSignal",
    "process_batch",
    "run_with_retry",
    "ScrapeQueue",
    "QueueItem",
    "Priority",
    "QueueItemStatus",
    # Matching and import
    "VehicleMatcher",
    "ContractMeta",
    "ParseOutcome",
    "RateParser",
    "RateImporter",
    "make_batch_id",
    # Browser utilities
    "BrowserManager",
    "capture_session",
    # Clients and registry
    "ProviderClient",
    "ProviderRegistry",
    "register_provider",
    "get_client",
    "list_providers",
    # Orchestration
    "Orchestrator",
    "create_client",
    "default_matcher",
    "run_single_quote",
    "run_batch",
    "run_bulk_export",
    "run_scrape",
]
