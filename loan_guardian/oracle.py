"""
Price oracle synchronisation.

The Pyth Hermes service hands out signed price updates off-chain. Before the
engine trusts a price it pushes the latest update on-chain through the price
consumer contract, waits for the transaction to be mined, and only then reads
the stored price back, so every decision uses a price no older than the
execution that made it.
"""
from decimal import Decimal
from typing import Dict, List, Optional

import httpx
import structlog
from eth_account.signers.local import LocalAccount
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from .abis import PYTH_ABI, PRICE_CONSUMER_ABI
from .chain import ChainClient
from .config import settings, NATIVE_DECIMALS
from .error_handling import (
    CircuitBreaker, CircuitBreakerConfig, OracleResponseError, OracleUnavailableError
)

logger = structlog.get_logger()


def scale_price(raw_price: int, exponent: int) -> Decimal:
    """Apply a Pyth exponent to a fixed-point price"""
    if raw_price <= 0:
        raise OracleResponseError(f"Stored price is not positive: {raw_price}")
    return Decimal(raw_price).scaleb(exponent)


class HermesClient:
    """Client for the Pyth Hermes price service"""

    def __init__(self, base_url: Optional[str] = None, timeout: float = 30.0):
        self.base_url = base_url or settings.HERMES_BASE_URL
        self.timeout = timeout
        self.circuit_breaker = CircuitBreaker(CircuitBreakerConfig(
            name="hermes",
            failure_threshold=3,
            timeout=30,
            expected_exception=OracleUnavailableError,
        ))

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Accept": "application/json"},
            timeout=self.timeout,
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True
    )
    async def _make_request(self, client: httpx.AsyncClient, method: str, endpoint: str, **kwargs) -> Dict:
        """Make HTTP request, retrying transport failures"""
        response = await client.request(method, endpoint, **kwargs)
        response.raise_for_status()
        return response.json()

    async def _fetch_latest(self, feed_ids: List[str]) -> Dict:
        try:
            async with self._client() as client:
                return await self._make_request(
                    client, "GET", "/v2/updates/price/latest", params={"ids[]": feed_ids}
                )
        except httpx.HTTPStatusError as e:
            logger.error("Hermes returned an error status", status_code=e.response.status_code)
            raise OracleUnavailableError(f"Hermes request failed: {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.error("Hermes request error", error=str(e))
            raise OracleUnavailableError(f"Hermes unreachable: {e}") from e
        except ValueError as e:
            raise OracleResponseError(f"Hermes returned invalid JSON: {e}") from e

    async def fetch_latest_price_update(self, feed_ids: List[str]) -> List[str]:
        """Return the signed update blobs for the feeds as 0x-prefixed hex strings"""
        payload = await self.circuit_breaker.call(self._fetch_latest, feed_ids)
        return parse_price_update(payload)


def parse_price_update(payload: Dict) -> List[str]:
    binary = payload.get("binary") if isinstance(payload, dict) else None
    data = binary.get("data") if isinstance(binary, dict) else None

    if not isinstance(data, list) or not data:
        raise OracleResponseError("Unexpected response structure from Hermes (binary.data missing or not a list)")

    update_data = []
    for item in data:
        if not isinstance(item, str) or not item:
            raise OracleResponseError("Invalid item found in Hermes binary.data")
        update_data.append(item if item.startswith("0x") else f"0x{item}")

    return update_data


def _hex_to_bytes(blob: str) -> bytes:
    try:
        return bytes.fromhex(blob[2:])
    except ValueError as e:
        raise OracleResponseError(f"Hermes update is not valid hex: {e}") from e


class OracleSync:
    """Push the latest oracle update on-chain and read back the stored price"""

    def __init__(
        self,
        chain: ChainClient,
        hermes: HermesClient,
        signer: LocalAccount,
        feed_id: Optional[str] = None,
        pyth_address: Optional[str] = None,
        consumer_address: Optional[str] = None,
    ):
        self.chain = chain
        self.hermes = hermes
        self.signer = signer
        self.feed_id = feed_id or settings.PYTH_PRICE_FEED_ID
        self.pyth = chain.contract(pyth_address or settings.PYTH_CONTRACT_ADDRESS, PYTH_ABI)
        self.consumer = chain.contract(consumer_address or settings.PRICE_CONSUMER_ADDRESS, PRICE_CONSUMER_ABI)

    async def update_and_get_price(self) -> Decimal:
        logger.info("Fetching latest price update from Hermes", feed_id=self.feed_id)
        update_blobs = await self.hermes.fetch_latest_price_update([self.feed_id])
        update_data = [_hex_to_bytes(blob) for blob in update_blobs]

        update_fee = await self.chain.call(self.pyth.functions.getUpdateFee(update_data), "getUpdateFee")
        logger.info("Required oracle update fee",
                    fee=str(Decimal(update_fee).scaleb(-NATIVE_DECIMALS)))

        tx_hash = await self.chain.submit_and_confirm(
            self.signer,
            self.consumer.functions.updatePrices(update_data),
            "Price update",
            value=update_fee,
        )

        raw_price, exponent = await self.chain.call(self.consumer.functions.getETHPrice(), "getETHPrice")
        price = scale_price(raw_price, exponent)

        logger.info("On-chain price refreshed", price=str(price), tx_hash=tx_hash)
        return price
