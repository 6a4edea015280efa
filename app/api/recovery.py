"""
Error Recovery API Endpoints

Strategy catalog, suggestions, and recovery execution control.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from app.core.recovery.errors import (
    AutomationNotPermittedError,
    ConcurrencyLimitExceededError,
    ErrorNotFoundError,
    RecoveryAlreadyInProgressError,
    RecoveryError,
    StrategyNotFoundError,
)
from app.core.recovery.models import (
    ConditionOperator,
    ErrorCategory,
    PossibleCause,
    RecoveryCondition,
    RecoveryStep,
    RecoveryStepType,
    RecoveryStrategy,
    RiskLevel,
    RootCauseAnalysis,
    ValidationType,
)
from app.core.recovery.service import ErrorRecoveryService, get_recovery_service

router = APIRouter(prefix="/recovery", tags=["Recovery"])


# =============================================================================
# Request Models
# =============================================================================


class ConditionPayload(BaseModel):
    field: str
    operator: ConditionOperator
    value: Any = None
    weight: float = Field(default=1.0, ge=0, le=1)


class StepPayload(BaseModel):
    id: str
    name: str
    type: RecoveryStepType
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)
    timeout: float = Field(default=60.0, ge=0)
    retryable: bool = True
    max_retries: int = Field(default=1, ge=0, alias="maxRetries")
    rollback_required: bool = Field(default=False, alias="rollbackRequired")
    validation_checks: List[ValidationType] = Field(default_factory=list, alias="validationChecks")

    class Config:
        populate_by_name = True


class StrategyPayload(BaseModel):
    """Request body for registering a recovery strategy."""
    id: str
    name: str
    category: ErrorCategory
    description: str = ""
    applicable_conditions: List[ConditionPayload] = Field(
        default_factory=list, alias="applicableConditions"
    )
    steps: List[StepPayload] = Field(default_factory=list)
    automatic_execution: bool = Field(default=False, alias="automaticExecution")
    required_permissions: List[str] = Field(default_factory=list, alias="requiredPermissions")
    estimated_time: int = Field(default=0, ge=0, alias="estimatedTime")
    risk_level: RiskLevel = Field(default=RiskLevel.MEDIUM, alias="riskLevel")
    success_rate: float = Field(default=0.5, ge=0, le=1, alias="successRate")
    prerequisites: List[str] = Field(default_factory=list)

    class Config:
        populate_by_name = True

    def to_strategy(self) -> RecoveryStrategy:
        return RecoveryStrategy(
            id=self.id,
            name=self.name,
            category=self.category,
            description=self.description,
            applicable_conditions=[
                RecoveryCondition(c.field, c.operator, c.value, c.weight)
                for c in self.applicable_conditions
            ],
            steps=[
                RecoveryStep(
                    id=s.id,
                    name=s.name,
                    type=s.type,
                    description=s.description,
                    parameters=s.parameters,
                    timeout=s.timeout,
                    retryable=s.retryable,
                    max_retries=s.max_retries,
                    rollback_required=s.rollback_required,
                    validation_checks=list(s.validation_checks),
                )
                for s in self.steps
            ],
            automatic_execution=self.automatic_execution,
            required_permissions=self.required_permissions,
            estimated_time=self.estimated_time,
            risk_level=self.risk_level,
            success_rate=self.success_rate,
            prerequisites=self.prerequisites,
        )


class PossibleCausePayload(BaseModel):
    cause: str
    probability: float = 0.0
    evidence: List[str] = Field(default_factory=list)
    category: str = "technical"


class SuggestionRequest(BaseModel):
    """Optional root-cause hint used to boost matching strategies."""
    possible_causes: List[PossibleCausePayload] = Field(default_factory=list, alias="possibleCauses")
    root_cause_confidence: float = Field(default=0.0, alias="rootCauseConfidence")

    class Config:
        populate_by_name = True


class ExecuteRequest(BaseModel):
    error_id: str = Field(..., alias="errorId")
    strategy_id: str = Field(..., alias="strategyId")
    initiated_by: str = Field(..., alias="initiatedBy")
    auto_execution: bool = Field(default=False, alias="autoExecution")

    class Config:
        populate_by_name = True


class CancelRequest(BaseModel):
    cancelled_by: str = Field(..., alias="cancelledBy")

    class Config:
        populate_by_name = True


# =============================================================================
# Helpers
# =============================================================================


def _status_for(exc: RecoveryError) -> int:
    if isinstance(exc, (StrategyNotFoundError, ErrorNotFoundError)):
        return 404
    if isinstance(exc, RecoveryAlreadyInProgressError):
        return 409
    if isinstance(exc, ConcurrencyLimitExceededError):
        return 429
    if isinstance(exc, AutomationNotPermittedError):
        return 403
    return 400


# =============================================================================
# Strategy Endpoints
# =============================================================================


@router.get("/strategies")
async def list_strategies(service: ErrorRecoveryService = Depends(get_recovery_service)):
    """List registered recovery strategies."""
    strategies = service.get_recovery_strategies()
    return {
        "strategies": [s.to_dict() for s in strategies],
        "count": len(strategies),
    }


@router.post("/strategies", status_code=201)
async def add_strategy(
    request: StrategyPayload,
    service: ErrorRecoveryService = Depends(get_recovery_service),
):
    """Register a strategy. An existing strategy with the same id is replaced."""
    strategy = request.to_strategy()
    service.add_recovery_strategy(strategy)
    return strategy.to_dict()


@router.post("/errors/{error_id}/suggestions")
async def suggest_strategies(
    error_id: str,
    request: Optional[SuggestionRequest] = None,
    service: ErrorRecoveryService = Depends(get_recovery_service),
):
    """Rank strategies for a known error."""
    error = await service.error_source.get_error(error_id)
    if error is None:
        raise HTTPException(status_code=404, detail=ErrorNotFoundError(error_id).to_dict())

    root_cause = None
    if request is not None and request.possible_causes:
        root_cause = RootCauseAnalysis(
            error_id=error_id,
            possible_causes=[
                PossibleCause(c.cause, c.probability, list(c.evidence), c.category)
                for c in request.possible_causes
            ],
            root_cause_confidence=request.root_cause_confidence,
        )

    suggestions = await service.suggest_recovery_strategies(error, root_cause)
    return {
        "errorId": error_id,
        "suggestions": [s.to_dict() for s in suggestions],
    }


# =============================================================================
# Execution Endpoints
# =============================================================================


@router.post("/executions", status_code=202)
async def execute_strategy(
    request: ExecuteRequest,
    service: ErrorRecoveryService = Depends(get_recovery_service),
):
    """Admit a recovery execution. It runs in the background."""
    try:
        execution = await service.execute_recovery_strategy(
            error_id=request.error_id,
            strategy_id=request.strategy_id,
            initiated_by=request.initiated_by,
            auto_execution=request.auto_execution,
        )
    except RecoveryError as e:
        raise HTTPException(status_code=_status_for(e), detail=e.to_dict())

    return execution.to_dict()


@router.post("/executions/{execution_id}/cancel")
async def cancel_execution(
    execution_id: str,
    request: CancelRequest,
    service: ErrorRecoveryService = Depends(get_recovery_service),
):
    cancelled = await service.cancel_recovery(execution_id, request.cancelled_by)
    return {"executionId": execution_id, "cancelled": cancelled}


@router.get("/executions/active")
async def active_executions(service: ErrorRecoveryService = Depends(get_recovery_service)):
    executions = service.get_active_recoveries()
    return {
        "executions": [e.to_dict() for e in executions],
        "count": len(executions),
    }


@router.get("/executions/history")
async def execution_history(
    error_id: Optional[str] = Query(default=None, alias="errorId"),
    service: ErrorRecoveryService = Depends(get_recovery_service),
):
    """Persisted executions, newest first."""
    executions = await service.get_recovery_history(error_id)
    return {
        "executions": [e.to_dict() for e in executions],
        "count": len(executions),
    }
