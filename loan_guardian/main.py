from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog
import time
from contextlib import asynccontextmanager
from datetime import datetime

from .config import settings, Collections, JobNames, validate_chain_settings
from .database import db_manager, get_collection
from .routes import router
from .chain import ChainClient, load_account
from .error_handling import ErrorCollector
from .evaluator import ConditionEvaluator
from .jobs import LoanProtectionJob
from .oracle import HermesClient, OracleSync
from .repayment import DelegateeRepayer, RepaymentExecutor, build_approver
from .risk_reader import RiskReader
from .rule_store import RuleStore
from .scheduler import JobScheduler
from .security import log_event

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


def build_engine(app: FastAPI):
    """Wire the chain clients, stores and scheduler onto app.state"""
    chain = ChainClient()
    delegatee = load_account(settings.DELEGATEE_PRIVATE_KEY)
    hermes = HermesClient()
    error_collector = ErrorCollector()

    rule_store = RuleStore(get_collection(Collections.RULES))
    scheduler = JobScheduler(get_collection(Collections.JOBS))

    evaluator = ConditionEvaluator(
        OracleSync(chain, hermes, delegatee),
        RiskReader(chain),
    )
    executor = RepaymentExecutor(
        build_approver(chain),
        DelegateeRepayer(chain, delegatee),
    )

    scheduler.define(
        JobNames.LOAN_PROTECTION,
        LoanProtectionJob(rule_store, scheduler, evaluator, executor, error_collector),
    )

    app.state.chain = chain
    app.state.hermes = hermes
    app.state.error_collector = error_collector
    app.state.rule_store = rule_store
    app.state.scheduler = scheduler
    app.state.repayment_executor = executor

    logger.info("Engine initialised",
                delegatee=delegatee.address,
                approval_mode=settings.APPROVAL_MODE,
                chain_id=settings.CHAIN_ID)


# Application lifespan manager
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    # Startup
    startup_start_time = time.time()
    logger.info("Starting Loan Guardian")

    try:
        validate_chain_settings()

        await db_manager.connect()
        logger.info("Database connections established")

        build_engine(app)

        await app.state.scheduler.start()
        active_rules = await app.state.rule_store.count_active()

        startup_duration = time.time() - startup_start_time

        logger.info("✅ Loan Guardian ready",
                   active_rules=active_rules,
                   startup_time_seconds=round(startup_duration, 2))

        await log_event("loan_guardian_started", {
            "active_rules": active_rules,
            "startup_time_seconds": startup_duration,
            "version": "1.0.0"
        })

    except Exception as e:
        logger.error("Failed to start Loan Guardian", error=str(e))
        raise

    yield

    # Shutdown
    logger.info("Shutting down Loan Guardian")

    try:
        await app.state.scheduler.stop()
        logger.info("Scheduler stopped")

        await db_manager.disconnect()
        logger.info("Database connections closed")

        await log_event("loan_guardian_stopped", {
            "shutdown_at": datetime.utcnow().isoformat()
        })

        logger.info("Loan Guardian shutdown complete")

    except Exception as e:
        logger.error("Error during shutdown", error=str(e))

# Create FastAPI app
app = FastAPI(
    title="Loan Guardian",
    description="Loan protection monitoring and automated repayment for Aave positions",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    logger.info("Request received",
               method=request.method,
               url=str(request.url),
               client_ip=request.client.host if request.client else "unknown")

    try:
        response = await call_next(request)

        process_time = time.time() - start_time

        logger.info("Request completed",
                   method=request.method,
                   url=str(request.url),
                   status_code=response.status_code,
                   process_time=round(process_time, 3))

        response.headers["X-Process-Time"] = str(process_time)

        return response

    except Exception as e:
        process_time = time.time() - start_time

        logger.error("Request failed",
                    method=request.method,
                    url=str(request.url),
                    error=str(e),
                    process_time=round(process_time, 3))
        raise

# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors"""

    logger.error("Unhandled exception",
                method=request.method,
                url=str(request.url),
                error=str(exc),
                error_type=type(exc).__name__)

    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "timestamp": datetime.utcnow().isoformat(),
        }
    )

# HTTP exception handler
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handler for HTTP exceptions"""

    logger.warning("HTTP exception",
                  method=request.method,
                  url=str(request.url),
                  status_code=exc.status_code,
                  detail=exc.detail)

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.detail,
            "status_code": exc.status_code,
            "timestamp": datetime.utcnow().isoformat()
        }
    )

# Request body validation errors are client errors
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handler for invalid request bodies"""

    details = [
        {"field": ".".join(str(part) for part in error["loc"][1:]), "message": error["msg"]}
        for error in exc.errors()
    ]

    logger.warning("Request validation failed",
                  method=request.method,
                  url=str(request.url),
                  errors=details)

    return JSONResponse(
        status_code=400,
        content={
            "error": "Invalid request body",
            "details": details,
            "status_code": 400,
            "timestamp": datetime.utcnow().isoformat()
        }
    )

# Include routes
app.include_router(router)

# Root endpoint
@app.get("/")
async def root():
    """Root endpoint with service information"""
    return {
        "service": "Loan Guardian",
        "version": "1.0.0",
        "description": "Automated Aave loan protection: repays debt when health factor and price fall below limits",
        "status": "operational",
        "timestamp": datetime.utcnow().isoformat(),
        "endpoints": {
            "create_rule": "POST /rules",
            "get_rule": "GET /rules/{rule_id}",
            "manual_repay": "POST /test-repay",
            "status": "/api/status",
            "health": "/api/health",
            "docs": "/docs"
        },
        "health_factor_threshold": settings.HEALTH_FACTOR_DANGER_THRESHOLD,
        "check_interval_seconds": settings.LOAN_PROTECTION_INTERVAL_SECONDS,
        "rate_limit": f"{settings.RATE_LIMIT_PER_MINUTE} rule creations per minute per client"
    }

if __name__ == "__main__":
    import uvicorn

    logger.info("Starting Loan Guardian server",
                host="0.0.0.0",
                port=settings.SERVICE_PORT,
                environment=settings.ENV)

    uvicorn.run(
        "loan_guardian.main:app",
        host="0.0.0.0",
        port=settings.SERVICE_PORT,
        log_level=settings.LOG_LEVEL.lower(),
        reload=settings.ENV == "development",
        access_log=True
    )
