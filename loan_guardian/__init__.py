"""
Loan Guardian - Loan Protection Monitoring & Repayment Execution Engine

This package provides a FastAPI service that watches Aave borrowing positions
on behalf of their owners and repays part of the debt automatically once the
position is in danger.

Key Features:
- User-defined protection rules (trigger price, repay amount) in MongoDB
- Recurring per-rule jobs on a MongoDB-backed scheduler with lease locking
- Fresh Pyth prices pushed on-chain before every decision
- Health factor reads from the Aave V3 pool
- Two-phase repayment: payer allowance, then delegatee repay on behalf of the borrower
- Wallet-key or external approval-service allowance variants
- Per-signer nonce management for concurrent rule executions
- Redis-based rate limiting of rule creation
- Structured logging with structlog

Version: 1.0.0
"""

__version__ = "1.0.0"

from .main import app
from .config import settings

__all__ = ["app", "settings"]
