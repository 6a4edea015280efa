"""
Error Recovery Module

Suggests, gates and executes remediation strategies for classified
runtime errors.
"""

from .actions import (
    ActionResult,
    HttpHealthCheckAction,
    StepActionDispatcher,
    StepContext,
    register_builtin_actions,
)
from .errors import (
    AutomationNotPermittedError,
    ConcurrencyLimitExceededError,
    ErrorNotFoundError,
    InvalidTransitionError,
    RecoveryAlreadyInProgressError,
    RecoveryError,
    StepActionFailure,
    StrategyNotFoundError,
    UnsupportedStepTypeError,
)
from .events import RecoveryEventBus, RecoveryEventType
from .executor import RecoveryExecutionEngine
from .models import (
    AutoRecoveryConfig,
    ConditionOperator,
    ErrorCategory,
    ErrorContext,
    ErrorSeverity,
    EstimatedImpact,
    PossibleCause,
    RecoveryCondition,
    RecoveryExecution,
    RecoveryStatus,
    RecoveryStep,
    RecoveryStepType,
    RecoveryStrategy,
    RecoverySuggestion,
    RequiredApprovals,
    RiskLevel,
    RootCauseAnalysis,
    StructuredError,
    ValidationType,
)
from .persistence import InMemoryErrorSource, InMemoryExecutionStore, InMemoryStore
from .policy import automation_block_reason, should_automate
from .queue import ExecutionQueue
from .recommender import StrategyRecommender
from .strategies import StrategyCatalog, default_strategies
from .service import ErrorRecoveryService, get_recovery_service

__all__ = [
    # Errors
    "RecoveryError",
    "StrategyNotFoundError",
    "ErrorNotFoundError",
    "RecoveryAlreadyInProgressError",
    "ConcurrencyLimitExceededError",
    "AutomationNotPermittedError",
    "InvalidTransitionError",
    "StepActionFailure",
    "UnsupportedStepTypeError",
    # Models
    "AutoRecoveryConfig",
    "ConditionOperator",
    "ErrorCategory",
    "ErrorContext",
    "ErrorSeverity",
    "EstimatedImpact",
    "PossibleCause",
    "RecoveryCondition",
    "RecoveryExecution",
    "RecoveryStatus",
    "RecoveryStep",
    "RecoveryStepType",
    "RecoveryStrategy",
    "RecoverySuggestion",
    "RequiredApprovals",
    "RiskLevel",
    "RootCauseAnalysis",
    "StructuredError",
    "ValidationType",
    # Components
    "ActionResult",
    "HttpHealthCheckAction",
    "StepActionDispatcher",
    "StepContext",
    "register_builtin_actions",
    "RecoveryEventBus",
    "RecoveryEventType",
    "RecoveryExecutionEngine",
    "ExecutionQueue",
    "InMemoryErrorSource",
    "InMemoryExecutionStore",
    "InMemoryStore",
    "StrategyCatalog",
    "StrategyRecommender",
    "default_strategies",
    "automation_block_reason",
    "should_automate",
    # Service
    "ErrorRecoveryService",
    "get_recovery_service",
]
