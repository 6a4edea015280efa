"""
Recovery Models

Defines the core types for error recovery orchestration: the structured
error input, strategies and their steps, executions and their results.
"""

import copy
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def generate_execution_id() -> str:
    """Execution ids look like ``recovery_<epoch ms>_<random>``."""
    return f"recovery_{int(time.time() * 1000)}_{secrets.token_hex(6)}"


# =============================================================================
# Structured error (produced upstream by error classification)
# =============================================================================


class ErrorCategory(str, Enum):
    """Categories assigned to errors by upstream classification."""

    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    VALIDATION = "validation"
    DATABASE = "database"
    EXTERNAL_API = "external_api"
    NETWORK = "network"
    PERFORMANCE = "performance"
    BUSINESS_LOGIC = "business_logic"
    SYSTEM = "system"
    SECURITY = "security"
    COMPLIANCE = "compliance"
    TRADING = "trading"
    PORTFOLIO = "portfolio"
    MARKET_DATA = "market_data"
    SETTLEMENT = "settlement"
    UNKNOWN = "unknown"


class ErrorSeverity(str, Enum):
    """Severity of a structured error."""

    CRITICAL = "critical"   # System down, data corruption, security breach
    HIGH = "high"           # Major functionality broken
    MEDIUM = "medium"       # Feature broken, moderate impact
    LOW = "low"             # Minor issues
    INFO = "info"           # Informational only


@dataclass
class ErrorContext:
    """Where an error happened."""

    service: str = ""
    version: str = ""
    environment: str = ""
    timestamp: datetime = field(default_factory=_utcnow)
    trace_id: Optional[str] = None
    span_id: Optional[str] = None
    parent_span_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "version": self.version,
            "environment": self.environment,
            "timestamp": _iso(self.timestamp),
            "traceId": self.trace_id,
            "spanId": self.span_id,
            "parentSpanId": self.parent_span_id,
        }


@dataclass
class StructuredError:
    """A classified, deduplicated error record."""

    id: str
    fingerprint: str
    message: str
    category: ErrorCategory = ErrorCategory.UNKNOWN
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    error_type: str = "Error"
    stack: Optional[str] = None
    context: ErrorContext = field(default_factory=ErrorContext)
    metadata: Dict[str, Any] = field(default_factory=dict)
    count: int = 1
    first_seen: datetime = field(default_factory=_utcnow)
    last_seen: datetime = field(default_factory=_utcnow)
    resolved: bool = False
    tags: List[str] = field(default_factory=list)
    affected_users: List[str] = field(default_factory=list)
    related_errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "fingerprint": self.fingerprint,
            "message": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "errorType": self.error_type,
            "stack": self.stack,
            "context": self.context.to_dict(),
            "metadata": self.metadata,
            "count": self.count,
            "firstSeen": _iso(self.first_seen),
            "lastSeen": _iso(self.last_seen),
            "resolved": self.resolved,
            "tags": self.tags,
            "affectedUsers": self.affected_users,
            "relatedErrors": self.related_errors,
        }


@dataclass
class PossibleCause:
    """One candidate cause from root-cause analysis."""

    cause: str
    probability: float = 0.0
    evidence: List[str] = field(default_factory=list)
    category: str = "technical"  # technical, business, external, user


@dataclass
class RootCauseAnalysis:
    """Independent root-cause analysis used to corroborate strategies."""

    error_id: str
    possible_causes: List[PossibleCause] = field(default_factory=list)
    root_cause_confidence: float = 0.0


# =============================================================================
# Strategies
# =============================================================================


class RiskLevel(str, Enum):
    """Risk of running a strategy."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ConditionOperator(str, Enum):
    """Operators available to applicability conditions."""

    EQUALS = "equals"
    CONTAINS = "contains"
    MATCHES = "matches"
    IN = "in"
    GT = "gt"
    LT = "lt"


class RecoveryStepType(str, Enum):
    """Kinds of remediation actions a step can perform."""

    RESTART_SERVICE = "restart_service"
    CLEAR_CACHE = "clear_cache"
    RESET_CONNECTION = "reset_connection"
    SCALE_RESOURCES = "scale_resources"
    ROLLBACK_DEPLOYMENT = "rollback_deployment"
    EXECUTE_SCRIPT = "execute_script"
    SEND_NOTIFICATION = "send_notification"
    UPDATE_CONFIG = "update_config"
    MANUAL_INTERVENTION = "manual_intervention"
    HEALTH_CHECK = "health_check"


class ValidationType(str, Enum):
    """Checks that validate a step's effect."""

    HEALTH_CHECK = "health_check"
    PERFORMANCE_TEST = "performance_test"
    CONNECTIVITY_TEST = "connectivity_test"
    DATA_INTEGRITY = "data_integrity"
    USER_ACCEPTANCE = "user_acceptance"


@dataclass
class RecoveryCondition:
    """Weighted applicability condition evaluated against an error."""

    field: str
    operator: ConditionOperator
    value: Any = None
    weight: float = 1.0

    def to_dict(self) -> Dict[str, Any]:
        value = self.value
        if hasattr(value, "pattern"):
            value = value.pattern
        elif isinstance(value, Enum):
            value = value.value
        elif isinstance(value, (list, tuple, set)):
            value = [v.value if isinstance(v, Enum) else v for v in value]
        return {
            "field": self.field,
            "operator": self.operator.value,
            "value": value,
            "weight": self.weight,
        }


@dataclass
class RecoveryStep:
    """One remediation action within a strategy."""

    id: str
    name: str
    type: RecoveryStepType
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)
    timeout: float = 60.0  # seconds, 0 disables the limit
    retryable: bool = True
    max_retries: int = 1
    rollback_required: bool = False
    validation_checks: List[ValidationType] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "type": self.type.value,
            "parameters": self.parameters,
            "timeout": self.timeout,
            "retryable": self.retryable,
            "maxRetries": self.max_retries,
            "rollbackRequired": self.rollback_required,
            "validationChecks": [v.value for v in self.validation_checks],
        }


@dataclass
class RecoveryStrategy:
    """A named, reusable remediation plan."""

    id: str
    name: str
    category: ErrorCategory
    description: str = ""
    applicable_conditions: List[RecoveryCondition] = field(default_factory=list)
    steps: List[RecoveryStep] = field(default_factory=list)
    automatic_execution: bool = False
    required_permissions: List[str] = field(default_factory=list)
    estimated_time: int = 0  # minutes
    risk_level: RiskLevel = RiskLevel.MEDIUM
    success_rate: float = 0.5
    prerequisites: List[str] = field(default_factory=list)

    def snapshot(self) -> "RecoveryStrategy":
        """Deep copy taken when an execution starts."""
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category.value,
            "applicableConditions": [c.to_dict() for c in self.applicable_conditions],
            "steps": [s.to_dict() for s in self.steps],
            "automaticExecution": self.automatic_execution,
            "requiredPermissions": self.required_permissions,
            "estimatedTime": self.estimated_time,
            "riskLevel": self.risk_level.value,
            "successRate": self.success_rate,
            "prerequisites": self.prerequisites,
        }


# =============================================================================
# Executions
# =============================================================================


class RecoveryStatus(str, Enum):
    """Lifecycle status of an execution or a step."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {
        RecoveryStatus.COMPLETED,
        RecoveryStatus.FAILED,
        RecoveryStatus.ROLLED_BACK,
        RecoveryStatus.CANCELLED,
    }
)


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


@dataclass
class RecoveryLog:
    """Entry in an execution's own log."""

    level: LogLevel
    message: str
    timestamp: datetime = field(default_factory=_utcnow)
    step_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": _iso(self.timestamp),
            "level": self.level.value,
            "message": self.message,
            "stepId": self.step_id,
            "metadata": self.metadata,
        }


@dataclass
class RecoveryStepExecution:
    """Progress of one step within an execution."""

    step_id: str
    status: RecoveryStatus = RecoveryStatus.PENDING
    attempts: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    output: Optional[str] = None
    error: Optional[str] = None
    rollback_performed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stepId": self.step_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "startTime": _iso(self.start_time),
            "endTime": _iso(self.end_time),
            "output": self.output,
            "error": self.error,
            "rollbackPerformed": self.rollback_performed,
        }


@dataclass
class RecoveryResult:
    """Aggregate outcome of an execution."""

    total_steps: int = 0
    success: bool = False
    steps_completed: int = 0
    time_taken_ms: float = 0.0
    error_resolved: bool = False
    side_effects: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    follow_up_actions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "stepsCompleted": self.steps_completed,
            "totalSteps": self.total_steps,
            "timeTaken": self.time_taken_ms,
            "errorResolved": self.error_resolved,
            "sideEffects": self.side_effects,
            "recommendations": self.recommendations,
            "followUpActions": self.follow_up_actions,
        }


@dataclass
class RecoveryExecution:
    """One run of a strategy against one error occurrence."""

    error_id: str
    strategy_id: str
    initiated_by: str
    strategy: RecoveryStrategy
    id: str = field(default_factory=generate_execution_id)
    auto_execution: bool = False
    status: RecoveryStatus = RecoveryStatus.PENDING
    start_time: datetime = field(default_factory=_utcnow)
    end_time: Optional[datetime] = None
    current_step: int = 0
    steps: List[RecoveryStepExecution] = field(default_factory=list)
    result: RecoveryResult = field(default_factory=RecoveryResult)
    logs: List[RecoveryLog] = field(default_factory=list)
    rollback_executed: bool = False

    @classmethod
    def create(
        cls,
        error_id: str,
        strategy: RecoveryStrategy,
        initiated_by: str,
        auto_execution: bool = False,
    ) -> "RecoveryExecution":
        """Build a pending execution from a snapshot of the strategy."""
        snapshot = strategy.snapshot()
        return cls(
            error_id=error_id,
            strategy_id=snapshot.id,
            initiated_by=initiated_by,
            strategy=snapshot,
            auto_execution=auto_execution,
            steps=[RecoveryStepExecution(step_id=step.id) for step in snapshot.steps],
            result=RecoveryResult(total_steps=len(snapshot.steps)),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status == RecoveryStatus.IN_PROGRESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "errorId": self.error_id,
            "strategyId": self.strategy_id,
            "initiatedBy": self.initiated_by,
            "autoExecution": self.auto_execution,
            "startTime": _iso(self.start_time),
            "endTime": _iso(self.end_time),
            "status": self.status.value,
            "currentStep": self.current_step,
            "steps": [s.to_dict() for s in self.steps],
            "results": self.result.to_dict(),
            "logs": [log.to_dict() for log in self.logs],
            "rollbackExecuted": self.rollback_executed,
        }


# =============================================================================
# Configuration and suggestions
# =============================================================================


@dataclass
class RequiredApprovals:
    """Situations in which unattended recovery needs a human."""

    high_risk: bool = True
    production_environment: bool = True
    critical_services: List[str] = field(default_factory=list)


@dataclass
class AutoRecoveryConfig:
    """Global policy for unattended recovery."""

    enabled: bool = True
    max_concurrent_recoveries: int = 5
    cooldown_period: float = 300.0  # seconds
    blacklisted_services: List[str] = field(default_factory=list)
    required_approvals: RequiredApprovals = field(default_factory=RequiredApprovals)


class EstimatedImpact(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class RecoverySuggestion:
    """A ranked recommendation of a strategy for an error."""

    strategy_id: str
    confidence: float
    reasoning: str
    estimated_impact: EstimatedImpact
    automation_recommended: bool
    prerequisites: List[str] = field(default_factory=list)
    alternatives: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategyId": self.strategy_id,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "estimatedImpact": self.estimated_impact.value,
            "automationRecommended": self.automation_recommended,
            "prerequisites": self.prerequisites,
            "alternatives": self.alternatives,
        }
