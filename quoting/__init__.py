"""
Task Quoting Engine

This package turns a short task brief into a structured scope, a
complexity score and a time-limited quote, tracking each task through a
stage-machine workflow with durable, debounced persistence.
"""

__version__ = "0.1.0"

# Scoring
from quoting.complexity import calculate_complexity, inputs_from_scope

# Configuration
from quoting.config import Settings

# Errors
from quoting.errors import (
    InvalidTransitionError,
    PersistenceError,
    QuoteExpiredError,
    QuotingError,
    RecordNotFoundError,
    ReviewRequiredError,
    UpstreamError,
    ValidationError,
)

# Extraction
from quoting.extractor import Extractor, HeuristicExtractor, ModelExtractor

# Orchestration
from quoting.orchestrate import QuoteOrchestrator, RecordStatus, build_store

# Pricing
from quoting.pricing import PricingConfig, calculate_price, requote

# Risk
from quoting.risk import RiskDetector

# Records
from quoting.schemas import (
    ClarificationResponse,
    ComplexityResult,
    ExtractionResult,
    PricingResult,
    ScopeDrivers,
    ScopeStructured,
    WorkflowRecord,
)
from quoting.state_machine import Stage, Trigger
from quoting.store import RecordFilter, RecordStore

__all__ = [
    # Version
    "__version__",
    # Config
    "Settings",
    # State machine
    "Stage",
    "Trigger",
    # Records
    "WorkflowRecord",
    "ExtractionResult",
    "ClarificationResponse",
    "ScopeStructured",
    "ScopeDrivers",
    "ComplexityResult",
    "PricingResult",
    # Store
    "RecordStore",
    "RecordFilter",
    # Scoring & pricing
    "calculate_complexity",
    "inputs_from_scope",
    "calculate_price",
    "requote",
    "PricingConfig",
    "RiskDetector",
    # Extraction
    "Extractor",
    "HeuristicExtractor",
    "ModelExtractor",
    # Orchestration
    "QuoteOrchestrator",
    "RecordStatus",
    "build_store",
    # Errors
    "QuotingError",
    "RecordNotFoundError",
    "InvalidTransitionError",
    "ValidationError",
    "UpstreamError",
    "QuoteExpiredError",
    "ReviewRequiredError",
    "PersistenceError",
]
