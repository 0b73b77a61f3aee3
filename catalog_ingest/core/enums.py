"""Enums for ingestion queue, observation and reconciliation fields."""

from enum import Enum


class JobStatus(str, Enum):
    """Status of a persisted ingestion job."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class RunStatus(str, Enum):
    """Status of a source-level ingestion run."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class JobKind(str, Enum):
    """Kinds of work the ingestion worker knows how to run."""

    OFFERS_DETAIL_BULK = "offers.detail_refresh.bulk"
    OFFERS_DETAIL_ONE = "offers.detail_refresh.one"
    OFFERS_HEAD_BULK = "offers.head_refresh.bulk"
    OFFERS_HEAD_ONE = "offers.head_refresh.one"


class EntityType(str, Enum):
    """Types of remote things an ingestion source can track."""

    PRODUCT = "product"
    PLANT = "plant"
    OFFER = "offer"


class CanonicalType(str, Enum):
    """Types of canonical records an entity may be mapped to."""

    PRODUCT = "product"
    PLANT = "plant"
    OFFER = "offer"


class Confidence(str, Enum):
    """Confidence tier attached to an extraction result."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TrustLevel(str, Enum):
    """Trust tag recorded per extracted field."""

    RETAILER = "retailer"
    MANUAL_SEED = "manual_seed"
    UNKNOWN = "unknown"


class RejectionReason(str, Enum):
    """Why the reconciliation gate refused to mutate canonical state."""

    TRANSPORT_FAILURE = "transport_failure"
    NO_SIGNAL = "no_signal"
    SEARCH_RESULTS_PAGE = "search_results_page"
    BLOCKED_PAGE = "blocked_page"
    LOW_CONFIDENCE = "low_confidence"
    NON_AUTHORITATIVE_PARSER = "non_authoritative_parser"


class RecoveryAction(str, Enum):
    """Operator recovery actions exposed by the ops service."""

    RETRY_FAILED_JOBS = "retry_failed_jobs"
    REQUEUE_STALE_QUEUED_JOBS = "requeue_stale_queued_jobs"
    RECOVER_STUCK_RUNNING_JOBS = "recover_stuck_running_jobs"
    ENQUEUE_FRESHNESS_REFRESH = "enqueue_freshness_refresh"
