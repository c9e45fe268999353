"""
Repayment trigger evaluation.

A rule fires only when both the position is unhealthy and the refreshed
collateral price has dropped below the user's trigger price.
"""
from decimal import Decimal
from typing import Optional

import structlog

from .config import settings
from .error_handling import EvaluationError
from .models import ConditionEvaluation, ProtectionRule
from .oracle import OracleSync
from .risk_reader import RiskReader

logger = structlog.get_logger()


def should_trigger(
    health_factor: Decimal,
    current_price: Decimal,
    trigger_price: Decimal,
    threshold: Decimal,
) -> bool:
    """Both comparisons are strict; a value equal to its bound does not fire"""
    return health_factor < threshold and current_price < trigger_price


class ConditionEvaluator:
    """Refreshes the oracle, reads the health factor and decides whether to repay"""

    def __init__(
        self,
        oracle: OracleSync,
        risk_reader: RiskReader,
        threshold: Optional[Decimal] = None,
    ):
        self.oracle = oracle
        self.risk_reader = risk_reader
        self.threshold = threshold if threshold is not None else Decimal(str(settings.HEALTH_FACTOR_DANGER_THRESHOLD))

    async def evaluate(self, rule: ProtectionRule) -> ConditionEvaluation:
        try:
            current_price = await self.oracle.update_and_get_price()
            health_factor = await self.risk_reader.get_health_factor(rule.user)
        except Exception as e:
            raise EvaluationError(f"Could not evaluate rule {rule.id}: {e}") from e

        trigger_price = rule.trigger_price_value
        triggered = should_trigger(health_factor, current_price, trigger_price, self.threshold)

        logger.info(
            "Rule evaluated",
            rule_id=rule.id,
            health_factor=str(health_factor),
            current_price=str(current_price),
            trigger_price=str(trigger_price),
            triggered=triggered,
        )

        return ConditionEvaluation(
            health_factor=health_factor,
            current_price=current_price,
            trigger_price=trigger_price,
            health_factor_threshold=self.threshold,
            triggered=triggered,
        )
