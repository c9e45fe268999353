"""
The per-rule loan protection job.

Each run loads the rule, refreshes the oracle and health factor, and repays
when the position is both unhealthy and below the user's trigger price. A run
always ends in a JobRunResult; nothing it does can raise into the scheduler.
A failed run leaves the rule active and scheduled, so the next tick is the
retry.
"""
import time
from typing import Optional, Protocol

import structlog
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from .error_handling import ErrorCollector, EvaluationError, RepaymentError
from .evaluator import ConditionEvaluator
from .models import JobOutcome, JobRunResult, ProtectionRule
from .repayment import RepaymentExecutor
from .rule_store import RuleStore
from .security import log_event

logger = structlog.get_logger()


class JobRemover(Protocol):
    async def remove_job(self, rule_id: str) -> bool:
        ...


class LoanProtectionJob:
    """Handler registered with the scheduler for every protection rule"""

    def __init__(
        self,
        rule_store: RuleStore,
        scheduler: JobRemover,
        evaluator: ConditionEvaluator,
        executor: RepaymentExecutor,
        error_collector: Optional[ErrorCollector] = None,
        deactivate_attempts: int = 3,
    ):
        self.rule_store = rule_store
        self.scheduler = scheduler
        self.evaluator = evaluator
        self.executor = executor
        self.error_collector = error_collector or ErrorCollector()
        self.deactivate_attempts = deactivate_attempts

    async def __call__(self, rule_id: str) -> JobRunResult:
        started = time.monotonic()
        logger.info("Executing loan protection", rule_id=rule_id)

        try:
            result = await self._run(rule_id)
        except Exception as e:
            logger.error("Loan protection run failed unexpectedly", rule_id=rule_id,
                         error=str(e), exc_info=True)
            self.error_collector.record_error(e, {"rule_id": rule_id, "stage": "unexpected"})
            result = JobRunResult(rule_id=rule_id, outcome=JobOutcome.ERROR,
                                  error=str(e), error_type=type(e).__name__)

        result.duration_seconds = round(time.monotonic() - started, 3)
        await log_event(
            "loan_protection_run",
            result.model_dump(mode="json"),
            "error" if result.failed else "info",
        )
        return result

    async def _run(self, rule_id: str) -> JobRunResult:
        rule = await self.rule_store.fetch_by_id(rule_id)

        if rule is None or not rule.is_active:
            logger.info("Rule not found or inactive, removing job", rule_id=rule_id,
                        found=rule is not None)
            return JobRunResult(
                rule_id=rule_id,
                outcome=JobOutcome.INACTIVE_EXIT,
                removal_failed=not await self._remove_job(rule_id),
            )

        try:
            evaluation = await self.evaluator.evaluate(rule)
        except EvaluationError as e:
            return self._failed(rule, e, "evaluation")

        if not evaluation.triggered:
            logger.info("Repay conditions not met", rule_id=rule_id,
                        health_factor=str(evaluation.health_factor),
                        current_price=str(evaluation.current_price))
            return JobRunResult(rule_id=rule_id, outcome=JobOutcome.SKIPPED, evaluation=evaluation)

        logger.warning("Repay conditions met, executing repayment", rule_id=rule_id,
                       user=rule.user, repay_amount=rule.repay_amount)
        try:
            repayment = await self.executor.execute(rule.user, rule.repay_amount, rule.payer_address)
        except RepaymentError as e:
            result = self._failed(rule, e, e.phase)
            result.evaluation = evaluation
            return result

        try:
            await self._deactivate(rule, repayment.repay_hash)
        except Exception as e:
            # Repaid on-chain but still active
            logger.critical("Repayment succeeded but rule could not be deactivated",
                            rule_id=rule_id, repay_hash=repayment.repay_hash, error=str(e))
            self.error_collector.record_error(e, {"rule_id": rule_id, "stage": "deactivate",
                                                  "repay_hash": repayment.repay_hash})
            return JobRunResult(rule_id=rule_id, outcome=JobOutcome.ERROR, evaluation=evaluation,
                                repayment=repayment, error=str(e), error_type=type(e).__name__)

        return JobRunResult(
            rule_id=rule_id,
            outcome=JobOutcome.DEACTIVATED,
            evaluation=evaluation,
            repayment=repayment,
            removal_failed=not await self._remove_job(rule_id),
        )

    async def _deactivate(self, rule: ProtectionRule, repay_hash: str):
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.deactivate_attempts),
            wait=wait_exponential(multiplier=0.5, max=4),
            reraise=True,
        ):
            with attempt:
                await self.rule_store.deactivate(rule.id, repay_hash)

        logger.info("Rule deactivated after repayment", rule_id=rule.id, repay_hash=repay_hash)

    async def _remove_job(self, rule_id: str) -> bool:
        """False only when removal itself failed; an already-missing job is fine"""
        try:
            await self.scheduler.remove_job(rule_id)
            return True
        except Exception as e:
            # The rule is inactive, so a leftover job exits on its next run
            logger.error("Failed to remove scheduled job", rule_id=rule_id, error=str(e))
            return False

    def _failed(self, rule: ProtectionRule, error: Exception, stage: str) -> JobRunResult:
        cause = getattr(error, "cause", None) or error.__cause__ or error
        logger.error("Loan protection attempt failed, will retry next interval",
                     rule_id=rule.id, stage=stage, error=str(error),
                     cause_type=type(cause).__name__)
        self.error_collector.record_error(error, {"rule_id": rule.id, "stage": stage})
        return JobRunResult(rule_id=rule.id, outcome=JobOutcome.ERROR,
                            error=str(error), error_type=type(cause).__name__)
