"""
Recovery Strategy Catalog

Registry of remediation strategies plus the strategies every deployment
starts with.
"""

import logging
import re
from typing import List, Optional

from .errors import StrategyNotFoundError
from .models import (
    ConditionOperator,
    ErrorCategory,
    ErrorSeverity,
    RecoveryCondition,
    RecoveryStep,
    RecoveryStepType,
    RecoveryStrategy,
    RiskLevel,
    ValidationType,
)
from .persistence import InMemoryStore, KeyValueStore


class StrategyCatalog:
    """
    Keyed registry of recovery strategies.

    Adding a strategy whose id already exists replaces it. Executions take
    their own snapshot at creation, so later changes here never reach a
    running execution.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore[RecoveryStrategy]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self._store: KeyValueStore[RecoveryStrategy] = store if store is not None else InMemoryStore()
        self.logger = logger or logging.getLogger(__name__)

    def add(self, strategy: RecoveryStrategy) -> None:
        replaced = self._store.get(strategy.id) is not None
        self._store.put(strategy.id, strategy)
        self.logger.info(
            f"Recovery strategy {'replaced' if replaced else 'added'}: {strategy.id} ({strategy.name})"
        )

    def remove(self, strategy_id: str) -> bool:
        removed = self._store.delete(strategy_id)
        if removed:
            self.logger.info(f"Recovery strategy removed: {strategy_id}")
        return removed

    def get(self, strategy_id: str) -> RecoveryStrategy:
        """Return the strategy or raise StrategyNotFoundError."""
        strategy = self._store.get(strategy_id)
        if strategy is None:
            raise StrategyNotFoundError(strategy_id)
        return strategy

    def list(self) -> List[RecoveryStrategy]:
        return self._store.list()

    def enabled_count(self) -> int:
        """Number of strategies allowed to run unattended."""
        return sum(1 for s in self._store.list() if s.automatic_execution)

    def seed(self, strategies: List[RecoveryStrategy]) -> None:
        for strategy in strategies:
            self._store.put(strategy.id, strategy)
        self.logger.info(f"Default recovery strategies initialized: {len(strategies)}")

    def __contains__(self, strategy_id: str) -> bool:
        return self._store.get(strategy_id) is not None

    def __len__(self) -> int:
        return len(self._store.list())


# =============================================================================
# Default strategies
# =============================================================================


def _database_connection_recovery() -> RecoveryStrategy:
    return RecoveryStrategy(
        id="database_connection_recovery",
        name="Database Connection Recovery",
        description="Recover from database connection failures",
        category=ErrorCategory.DATABASE,
        applicable_conditions=[
            RecoveryCondition("message", ConditionOperator.CONTAINS, "connection", 0.8),
            RecoveryCondition("category", ConditionOperator.EQUALS, ErrorCategory.DATABASE, 0.9),
        ],
        steps=[
            RecoveryStep(
                id="check_db_health",
                name="Check Database Health",
                description="Verify database server status and connectivity",
                type=RecoveryStepType.HEALTH_CHECK,
                parameters={"endpoint": "/health/database", "expectedStatus": 200, "timeout": 30},
                timeout=30,
                retryable=True,
                max_retries=3,
                validation_checks=[ValidationType.CONNECTIVITY_TEST],
            ),
            RecoveryStep(
                id="reset_connection_pool",
                name="Reset Connection Pool",
                description="Clear and reinitialize database connection pool",
                type=RecoveryStepType.RESET_CONNECTION,
                parameters={"service": "database-service", "poolName": "primary-pool"},
                timeout=60,
                retryable=True,
                max_retries=2,
                validation_checks=[ValidationType.CONNECTIVITY_TEST],
            ),
            RecoveryStep(
                id="restart_db_service",
                name="Restart Database Service",
                description="Restart the database service if connection issues persist",
                type=RecoveryStepType.RESTART_SERVICE,
                parameters={
                    "service": "database-service",
                    "gracefulShutdown": True,
                    "waitForHealthy": True,
                },
                timeout=300,
                retryable=False,
                max_retries=1,
                validation_checks=[ValidationType.HEALTH_CHECK, ValidationType.CONNECTIVITY_TEST],
            ),
        ],
        automatic_execution=True,
        required_permissions=["database:restart", "service:manage"],
        estimated_time=10,
        risk_level=RiskLevel.MEDIUM,
        success_rate=0.85,
        prerequisites=["Database monitoring enabled", "Service restart permissions"],
    )


def _memory_exhaustion_recovery() -> RecoveryStrategy:
    return RecoveryStrategy(
        id="memory_exhaustion_recovery",
        name="Memory Exhaustion Recovery",
        description="Recover from out of memory errors",
        category=ErrorCategory.SYSTEM,
        applicable_conditions=[
            RecoveryCondition(
                "message",
                ConditionOperator.MATCHES,
                re.compile(r"out.*of.*memory|memory.*exhausted|heap.*overflow", re.IGNORECASE),
                0.9,
            ),
        ],
        steps=[
            RecoveryStep(
                id="trigger_garbage_collection",
                name="Force Garbage Collection",
                description="Force garbage collection to free up memory",
                type=RecoveryStepType.EXECUTE_SCRIPT,
                parameters={"script": "gc-force.sh", "service": "{{error.context.service}}"},
                timeout=30,
                retryable=True,
                max_retries=2,
                validation_checks=[ValidationType.PERFORMANCE_TEST],
            ),
            RecoveryStep(
                id="scale_memory_resources",
                name="Scale Memory Resources",
                description="Increase memory allocation for the affected service",
                type=RecoveryStepType.SCALE_RESOURCES,
                parameters={
                    "resource": "memory",
                    "action": "increase",
                    "percentage": 50,
                    "service": "{{error.context.service}}",
                },
                timeout=120,
                retryable=True,
                max_retries=1,
                rollback_required=True,
                validation_checks=[ValidationType.HEALTH_CHECK, ValidationType.PERFORMANCE_TEST],
            ),
            RecoveryStep(
                id="restart_service_memory",
                name="Restart Service",
                description="Restart the service with increased memory allocation",
                type=RecoveryStepType.RESTART_SERVICE,
                parameters={
                    "service": "{{error.context.service}}",
                    "gracefulShutdown": True,
                    "waitForHealthy": True,
                },
                timeout=180,
                retryable=False,
                max_retries=1,
                validation_checks=[ValidationType.HEALTH_CHECK, ValidationType.PERFORMANCE_TEST],
            ),
        ],
        # Resource scaling needs approval
        automatic_execution=False,
        required_permissions=["resource:scale", "service:restart"],
        estimated_time=15,
        risk_level=RiskLevel.HIGH,
        success_rate=0.75,
        prerequisites=["Auto-scaling enabled", "Resource scaling permissions"],
    )


def _trading_system_recovery() -> RecoveryStrategy:
    return RecoveryStrategy(
        id="trading_system_recovery",
        name="Trading System Recovery",
        description="Recover from trading system failures",
        category=ErrorCategory.TRADING,
        applicable_conditions=[
            RecoveryCondition("category", ConditionOperator.EQUALS, ErrorCategory.TRADING, 0.9),
            RecoveryCondition(
                "severity",
                ConditionOperator.IN,
                [ErrorSeverity.CRITICAL, ErrorSeverity.HIGH],
                0.7,
            ),
        ],
        steps=[
            RecoveryStep(
                id="check_market_connectivity",
                name="Check Market Connectivity",
                description="Verify connectivity to market data providers",
                type=RecoveryStepType.HEALTH_CHECK,
                parameters={"endpoints": ["/health/market-data", "/health/order-gateway"]},
                timeout=30,
                retryable=True,
                max_retries=3,
                validation_checks=[ValidationType.CONNECTIVITY_TEST],
            ),
            RecoveryStep(
                id="reset_trading_session",
                name="Reset Trading Session",
                description="Reset trading session and reconnect to exchanges",
                type=RecoveryStepType.RESET_CONNECTION,
                parameters={"service": "trading-service", "sessionType": "trading"},
                timeout=90,
                retryable=True,
                max_retries=2,
                validation_checks=[ValidationType.CONNECTIVITY_TEST],
            ),
            RecoveryStep(
                id="notify_trading_team",
                name="Notify Trading Team",
                description="Send immediate notification to trading team",
                type=RecoveryStepType.SEND_NOTIFICATION,
                parameters={
                    "channels": ["trading-alerts"],
                    "priority": "critical",
                    "message": "Trading system recovery initiated for error: {{error.id}}",
                },
                timeout=10,
                retryable=True,
                max_retries=2,
            ),
        ],
        automatic_execution=True,
        required_permissions=["trading:manage", "notification:send"],
        estimated_time=5,
        risk_level=RiskLevel.HIGH,
        success_rate=0.8,
        prerequisites=["Trading team notification channels configured"],
    )


def _authentication_service_recovery() -> RecoveryStrategy:
    return RecoveryStrategy(
        id="authentication_service_recovery",
        name="Authentication Service Recovery",
        description="Recover from authentication service failures",
        category=ErrorCategory.AUTHENTICATION,
        applicable_conditions=[
            RecoveryCondition(
                "category", ConditionOperator.EQUALS, ErrorCategory.AUTHENTICATION, 0.8
            ),
            RecoveryCondition("count", ConditionOperator.GT, 10, 0.6),
        ],
        steps=[
            RecoveryStep(
                id="clear_auth_cache",
                name="Clear Authentication Cache",
                description="Clear authentication cache to resolve token issues",
                type=RecoveryStepType.CLEAR_CACHE,
                parameters={"cacheType": "authentication", "service": "auth-service"},
                timeout=30,
                retryable=True,
                max_retries=2,
                validation_checks=[ValidationType.HEALTH_CHECK],
            ),
            RecoveryStep(
                id="restart_auth_service",
                name="Restart Authentication Service",
                description="Restart authentication service if cache clearing fails",
                type=RecoveryStepType.RESTART_SERVICE,
                parameters={
                    "service": "auth-service",
                    "gracefulShutdown": True,
                    "waitForHealthy": True,
                },
                timeout=120,
                retryable=False,
                max_retries=1,
                validation_checks=[ValidationType.HEALTH_CHECK, ValidationType.USER_ACCEPTANCE],
            ),
        ],
        automatic_execution=True,
        required_permissions=["auth:manage", "service:restart"],
        estimated_time=8,
        risk_level=RiskLevel.MEDIUM,
        success_rate=0.9,
        prerequisites=["Authentication service monitoring enabled"],
    )


def default_strategies() -> List[RecoveryStrategy]:
    """Fresh copies of the built-in strategies."""
    return [
        _database_connection_recovery(),
        _memory_exhaustion_recovery(),
        _trading_system_recovery(),
        _authentication_service_recovery(),
    ]
