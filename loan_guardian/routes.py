from fastapi import APIRouter, HTTPException, Depends, Request
from fastapi.responses import JSONResponse
import structlog
from datetime import datetime
import time

from .config import settings
from .models import ProtectionRuleCreate, ManualRepayRequest, SystemStatus
from .database import db_manager
from .error_handling import ErrorCollector, RepaymentError
from .repayment import RepaymentExecutor
from .rule_store import RuleStore
from .scheduler import JobScheduler
from .security import check_rate_limit, log_event

logger = structlog.get_logger()

# Track application startup time for uptime calculation
app_start_time = time.time()

router = APIRouter()


# Engine components are built in the lifespan and kept on app.state
def get_rule_store(request: Request) -> RuleStore:
    return request.app.state.rule_store


def get_scheduler(request: Request) -> JobScheduler:
    return request.app.state.scheduler


def get_repayment_executor(request: Request) -> RepaymentExecutor:
    return request.app.state.repayment_executor


def get_error_collector(request: Request) -> ErrorCollector:
    return request.app.state.error_collector


async def apply_rate_limit(request: Request):
    """Apply rate limiting per client IP"""
    client_ip = request.client.host if request.client else "unknown"

    if not await check_rate_limit(client_ip):
        raise HTTPException(
            status_code=429,
            detail=f"Rate limit exceeded. Maximum {settings.RATE_LIMIT_PER_MINUTE} requests per minute."
        )


@router.post("/rules", status_code=201)
async def create_rule(
    request: Request,
    rule_request: ProtectionRuleCreate,
    rule_store: RuleStore = Depends(get_rule_store),
    scheduler: JobScheduler = Depends(get_scheduler),
):
    """Create a protection rule and schedule its recurring job"""
    await apply_rate_limit(request)

    missing = rule_request.missing_required_fields()
    if missing:
        raise HTTPException(
            status_code=400,
            detail=f"Missing required fields: {', '.join(missing)}"
        )

    rule = None
    try:
        rule = await rule_store.create(rule_request.to_rule())
        await scheduler.schedule_recurring(rule.id, settings.LOAN_PROTECTION_INTERVAL_SECONDS)
    except Exception as e:
        logger.error("Error creating protection rule", rule_id=rule.id if rule else None, error=str(e))
        if rule is not None:
            await _discard_unscheduled_rule(rule_store, rule.id)
        raise HTTPException(status_code=500, detail="Internal server error")

    await log_event("protection_rule_created", {
        "rule_id": rule.id,
        "user": rule.user,
        "trigger_price": rule.trigger_price,
        "repay_amount": rule.repay_amount,
    })

    return {
        "message": "Protection rule created and scheduled successfully.",
        "rule": rule.to_response(),
    }


async def _discard_unscheduled_rule(rule_store: RuleStore, rule_id: str):
    """Deactivate a stored rule whose job could not be scheduled"""
    try:
        await rule_store.deactivate(rule_id)
        logger.warning("Deactivated protection rule that could not be scheduled", rule_id=rule_id)
    except Exception as e:
        logger.critical("Active protection rule has no scheduled job", rule_id=rule_id, error=str(e))


@router.get("/rules/{rule_id}")
async def get_rule(rule_id: str, rule_store: RuleStore = Depends(get_rule_store)):
    """Fetch a protection rule by id"""
    try:
        rule = await rule_store.fetch_by_id(rule_id)
    except Exception as e:
        logger.error(f"Error fetching rule {rule_id}", error=str(e))
        raise HTTPException(status_code=500, detail="Internal server error")

    if rule is None:
        raise HTTPException(status_code=404, detail="Rule not found")

    return {"rule": rule.to_response()}


@router.post("/test-repay")
async def test_repay(
    repay_request: ManualRepayRequest,
    executor: RepaymentExecutor = Depends(get_repayment_executor),
    error_collector: ErrorCollector = Depends(get_error_collector),
):
    """Run a repayment immediately, outside any rule"""
    logger.info("Manual repayment requested",
                user=repay_request.user_address,
                repay_amount=repay_request.repay_amount)

    try:
        outcome = await executor.execute(
            repay_request.user_address,
            repay_request.repay_amount,
            repay_request.payer_address,
        )
    except RepaymentError as e:
        if e.phase == "amount":
            raise HTTPException(status_code=400, detail=str(e.cause))

        logger.error("Manual repayment failed", phase=e.phase, error=str(e))
        error_collector.record_error(e, {"user": repay_request.user_address, "stage": "manual_repay"})
        raise HTTPException(status_code=500, detail="Repayment failed")

    await log_event("manual_repayment_completed", {
        "user": repay_request.user_address,
        "repay_hash": outcome.repay_hash,
        "approval_hash": outcome.approval_hash,
    })

    return {
        "message": "Repayment executed successfully.",
        "data": {
            "txHash": outcome.repay_hash,
            "approvalHash": outcome.approval_hash,
            "approvalPerformed": outcome.approval_performed,
        },
    }


@router.get("/api/status", response_model=SystemStatus)
async def get_system_status(
    request: Request,
    rule_store: RuleStore = Depends(get_rule_store),
    scheduler: JobScheduler = Depends(get_scheduler),
    error_collector: ErrorCollector = Depends(get_error_collector),
):
    """Get overall system health and status"""
    try:
        hermes = getattr(request.app.state, "hermes", None)

        return SystemStatus(
            status="operational" if scheduler.is_running else "degraded",
            version="1.0.0",
            uptime_seconds=int(time.time() - app_start_time),
            active_rules=await rule_store.count_active(),
            scheduler=await scheduler.stats(),
            database_status=await db_manager.health_check(),
            oracle_circuit=hermes.circuit_breaker.get_stats() if hermes else {},
            error_summary=error_collector.get_error_summary(hours=24),
        )

    except Exception as e:
        logger.error("Error getting system status", error=str(e))
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/api/health")
async def health_check():
    """Simple health check endpoint"""
    try:
        health = await db_manager.health_check()
        if health["mongodb"]["status"] != "connected":
            raise RuntimeError("MongoDB is not connected")

        return {
            "status": "healthy",
            "timestamp": datetime.utcnow().isoformat(),
            "version": "1.0.0"
        }
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        return JSONResponse(
            status_code=503,
            content={
                "status": "unhealthy",
                "error": str(e),
                "timestamp": datetime.utcnow().isoformat()
            }
        )
