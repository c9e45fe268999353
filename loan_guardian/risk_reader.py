"""
Health factor reads from the lending pool.
"""
from decimal import Decimal
from typing import Optional

import structlog

from .abis import AAVE_POOL_ABI, HEALTH_FACTOR_INDEX
from .chain import ChainClient
from .config import settings, HEALTH_FACTOR_DECIMALS

logger = structlog.get_logger()


class RiskReader:
    """Reads a borrower's health factor from the Aave pool"""

    def __init__(self, chain: ChainClient, pool_address: Optional[str] = None):
        self.chain = chain
        self.pool = chain.contract(pool_address or settings.AAVE_POOL_ADDRESS, AAVE_POOL_ABI)

    async def get_health_factor(self, user: str) -> Decimal:
        account_data = await self.chain.call(
            self.pool.functions.getUserAccountData(self.chain.w3.to_checksum_address(user)),
            "getUserAccountData",
        )
        health_factor = Decimal(account_data[HEALTH_FACTOR_INDEX]).scaleb(-HEALTH_FACTOR_DECIMALS)

        logger.debug("Health factor read", user=user, health_factor=str(health_factor))
        return health_factor
