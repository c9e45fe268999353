"""
Error taxonomy for the loan protection engine, plus the circuit breaker that
guards the price oracle and the collector that keeps recent job failures
"""
import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from enum import Enum
from dataclasses import dataclass, field
import structlog

logger = structlog.get_logger()


# Exception classes for the engine's failure modes
class LoanGuardianError(Exception):
    """Base class for engine errors"""
    pass


class ConfigurationError(LoanGuardianError):
    """Raised at startup when credentials or endpoints are missing"""
    pass


class TransientNetworkError(LoanGuardianError):
    """RPC or oracle unreachable; the next scheduled tick retries"""
    pass


class OracleUnavailableError(TransientNetworkError):
    """Raised when the price service cannot be reached"""
    pass


class ConfirmationTimeoutError(TransientNetworkError):
    """Raised when a transaction is not mined within the confirmation timeout"""

    def __init__(self, tx_hash: str, timeout: float):
        super().__init__(f"Transaction {tx_hash} not confirmed within {timeout}s")
        self.tx_hash = tx_hash
        self.timeout = timeout


class OracleResponseError(LoanGuardianError):
    """Raised when the price service returns a malformed payload"""
    pass


class OnChainRevertError(LoanGuardianError):
    """Raised when a transaction reverts on-chain or fails gas estimation"""

    def __init__(self, action: str, tx_hash: Optional[str] = None, reason: Optional[str] = None):
        where = f"transaction {tx_hash}" if tx_hash else "transaction (estimation)"
        message = f"{action} {where} reverted"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.action = action
        self.tx_hash = tx_hash
        self.reason = reason


class EvaluationError(LoanGuardianError):
    """Raised when the price or health factor needed for a decision cannot be read"""
    pass


class RepaymentError(LoanGuardianError):
    """Raised when either phase of a repayment fails"""

    def __init__(self, phase: str, cause: Exception):
        super().__init__(f"Repayment failed during {phase}: {cause}")
        self.phase = phase
        self.cause = cause


class CircuitState(Enum):
    """Circuit breaker states"""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Circuit is open, failing fast
    HALF_OPEN = "half_open"  # Testing if service has recovered


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker configuration"""
    failure_threshold: int = 5
    timeout: int = 60  # Seconds before a half-open probe
    expected_exception: type = Exception
    name: str = "default"


@dataclass
class CircuitBreakerStats:
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: Optional[datetime] = None
    state_changed_time: datetime = field(default_factory=datetime.utcnow)
    total_calls: int = 0


class CircuitBreakerOpenError(TransientNetworkError):
    """Raised when circuit breaker is open"""
    pass


class CircuitBreaker:
    """Async circuit breaker implementation"""

    def __init__(self, config: CircuitBreakerConfig):
        self.config = config
        self.state = CircuitState.CLOSED
        self.stats = CircuitBreakerStats()
        self._lock = asyncio.Lock()
        self._probe_in_flight = False

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """Execute function with circuit breaker protection"""
        async with self._lock:
            self.stats.total_calls += 1

            if self.state == CircuitState.OPEN and self._should_attempt_reset():
                self._transition(CircuitState.HALF_OPEN)
                logger.info(f"Circuit breaker {self.config.name} moved to HALF_OPEN")

            if self.state == CircuitState.OPEN or self._probe_in_flight:
                raise CircuitBreakerOpenError(
                    f"Circuit breaker {self.config.name} is OPEN"
                )

            # Only one caller tests a half-open circuit
            is_probe = self.state == CircuitState.HALF_OPEN
            self._probe_in_flight = is_probe

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            if is_probe or isinstance(e, self.config.expected_exception):
                await self._on_failure(e)
            raise
        else:
            await self._on_success()
            return result
        finally:
            if is_probe:
                self._probe_in_flight = False

    def _transition(self, state: CircuitState):
        self.state = state
        self.stats.state_changed_time = datetime.utcnow()

    async def _on_success(self):
        async with self._lock:
            self.stats.failure_count = 0
            self.stats.success_count += 1

            if self.state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.CLOSED)
                logger.info(f"Circuit breaker {self.config.name} CLOSED after recovery")

    async def _on_failure(self, exception: Exception):
        async with self._lock:
            self.stats.failure_count += 1
            self.stats.last_failure_time = datetime.utcnow()

            if self.state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN)
                logger.error(
                    f"Circuit breaker {self.config.name} returned to OPEN after test failure",
                    exception=str(exception)
                )
            elif (self.state == CircuitState.CLOSED and
                  self.stats.failure_count >= self.config.failure_threshold):
                self._transition(CircuitState.OPEN)
                logger.error(
                    f"Circuit breaker {self.config.name} OPENED after {self.stats.failure_count} failures",
                    exception=str(exception)
                )

    def _should_attempt_reset(self) -> bool:
        return (datetime.utcnow() - self.stats.state_changed_time).total_seconds() >= self.config.timeout

    def get_stats(self) -> Dict:
        """Get circuit breaker statistics"""
        return {
            "name": self.config.name,
            "state": self.state.value,
            "failure_count": self.stats.failure_count,
            "success_count": self.stats.success_count,
            "total_calls": self.stats.total_calls,
            "last_failure_time": self.stats.last_failure_time.isoformat() if self.stats.last_failure_time else None,
        }


class ErrorCollector:
    """Keeps the most recent job failures for the status endpoint"""

    def __init__(self, max_errors: int = 1000):
        self.errors: List[Dict] = []
        self.error_counts: Dict[str, int] = {}
        self.max_errors = max_errors

    def record_error(self, error: Exception, context: Dict[str, Any] = None):
        """Record an error with context"""
        error_type = type(error).__name__
        self.errors.append({
            "timestamp": datetime.utcnow(),
            "type": error_type,
            "message": str(error),
            "context": context or {},
        })

        if len(self.errors) > self.max_errors:
            self.errors = self.errors[-self.max_errors:]

        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1

    def get_error_summary(self, hours: int = 24) -> Dict:
        """Get error summary for the last N hours"""
        cutoff_time = datetime.utcnow() - timedelta(hours=hours)
        recent_errors = [error for error in self.errors if error["timestamp"] > cutoff_time]

        error_types: Dict[str, Dict] = {}
        for error in recent_errors:
            bucket = error_types.setdefault(error["type"], {"count": 0, "examples": []})
            bucket["count"] += 1
            if len(bucket["examples"]) < 3:
                bucket["examples"].append({
                    "message": error["message"],
                    "timestamp": error["timestamp"].isoformat(),
                    "context": error["context"]
                })

        return {
            "time_window_hours": hours,
            "total_errors": len(recent_errors),
            "error_types": error_types,
        }
