#!/usr/bin/env python3
"""
Loan Guardian Startup Script

This script starts the Loan Guardian FastAPI service with configuration
validation and error handling.

Usage:
    python run.py [--port PORT] [--host HOST] [--env ENV]

Environment Variables:
    SERVICE_PORT: Port to run the service on (default: 8002)
    ENV: Environment (development/production)
    LOG_LEVEL: Logging level (DEBUG/INFO/WARNING/ERROR)
    MONGODB_URI, RPC_URL/ALCHEMY_API_KEY, DELEGATEE_PRIVATE_KEY, ...: see loan_guardian/config.py
"""

import argparse
import sys

import uvicorn
import structlog

from loan_guardian.config import settings, validate_chain_settings
from loan_guardian.error_handling import ConfigurationError

logger = structlog.get_logger()

def parse_arguments():
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Loan Guardian - Loan Protection Monitoring & Repayment"
    )

    parser.add_argument(
        "--port", "-p",
        type=int,
        default=settings.SERVICE_PORT,
        help=f"Port to run the service on (default: {settings.SERVICE_PORT})"
    )

    parser.add_argument(
        "--host", "-H",
        type=str,
        default="0.0.0.0",
        help="Host to bind the service to (default: 0.0.0.0)"
    )

    parser.add_argument(
        "--env", "-e",
        type=str,
        choices=["development", "production"],
        default=settings.ENV if settings.ENV in ("development", "production") else "development",
        help=f"Environment mode (default: {settings.ENV})"
    )

    parser.add_argument(
        "--reload", "-r",
        action="store_true",
        help="Enable auto-reload for development"
    )

    parser.add_argument(
        "--log-level", "-l",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=settings.LOG_LEVEL,
        help=f"Log level (default: {settings.LOG_LEVEL})"
    )

    parser.add_argument(
        "--workers", "-w",
        type=int,
        default=1,
        help="Number of worker processes (default: 1)"
    )

    return parser.parse_args()

def validate_environment():
    """Validate environment setup"""
    errors = []

    if not settings.MONGODB_URI.startswith("mongodb"):
        errors.append("Invalid MONGODB_URI format")

    try:
        validate_chain_settings()
    except ConfigurationError as e:
        errors.extend(str(e).split("; "))

    if errors:
        print("❌ Environment validation failed:")
        for error in errors:
            print(f"   - {error}")
        print("\nPlease check your .env file and ensure all required variables are set.")
        return False

    return True

def print_startup_banner():
    """Print startup banner with service information"""
    banner = f"""
╔══════════════════════════════════════════════════════════════════════════════╗
║                              🛡️  Loan Guardian                               ║
║              Loan Protection Monitoring & Repayment Execution                ║
╠══════════════════════════════════════════════════════════════════════════════╣
║ Version: 1.0.0                                                               ║
║ Port: {settings.SERVICE_PORT:<10} Environment: {settings.ENV:<20}                        ║
║ Chain ID: {settings.CHAIN_ID:<12} Approval mode: {settings.APPROVAL_MODE:<20}               ║
║ Redis: {'(enabled)' if settings.ENABLE_REDIS else '(disabled)':<10}                                                            ║
╠══════════════════════════════════════════════════════════════════════════════╣
║ Health factor threshold: {settings.HEALTH_FACTOR_DANGER_THRESHOLD:<6}                                              ║
║ Check interval: {settings.LOAN_PROTECTION_INTERVAL_SECONDS:<6} seconds per rule                                       ║
╠══════════════════════════════════════════════════════════════════════════════╣
║ API Endpoints:                                                               ║
║ • POST /rules                 - Create protection rule                       ║
║ • GET  /rules/{{rule_id}}       - Get protection rule                          ║
║ • POST /test-repay            - Manual repayment                             ║
║ • GET  /api/status            - System status                                ║
║ • GET  /docs                  - API documentation                            ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""
    print(banner)

def main():
    """Main entry point"""
    args = parse_arguments()

    print_startup_banner()

    if not validate_environment():
        sys.exit(1)

    uvicorn_config = {
        "app": "loan_guardian.main:app",
        "host": args.host,
        "port": args.port,
        "log_level": args.log_level.lower(),
        "access_log": True,
        "reload": args.reload or args.env == "development",
        "workers": args.workers if args.env == "production" else 1,
    }

    try:
        logger.info("Starting Loan Guardian",
                   host=args.host,
                   port=args.port,
                   env=args.env,
                   workers=args.workers)

        uvicorn.run(**uvicorn_config)

    except KeyboardInterrupt:
        logger.info("Received shutdown signal")
    except Exception as e:
        logger.error("Failed to start server", error=str(e))
        sys.exit(1)

if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print("\n👋 Loan Guardian stopped by user")
