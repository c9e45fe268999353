"""
Blockchain RPC access: contract reads, signed transaction submission and
confirmation waits, with per-signer nonce management.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import aiohttp
import structlog
from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3
from web3.contract import AsyncContract
from web3.exceptions import ContractLogicError, TimeExhausted

from .config import settings
from .error_handling import (
    ConfirmationTimeoutError, OnChainRevertError, TransientNetworkError
)

logger = structlog.get_logger()

NETWORK_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError)


def load_account(private_key: str) -> LocalAccount:
    """Build a local signer from a hex private key"""
    return Account.from_key(private_key)


class NonceManager:
    """Hands out sequential nonces per signer address.

    Every rule execution shares the delegatee key, so sends are serialised
    per address and the next nonce is tracked locally. The counter is
    re-read from the node's pending count on first use, after any failed
    send and after a sent transaction fails to confirm.
    """

    def __init__(self, web3: AsyncWeb3):
        self.w3 = web3
        self._locks: Dict[str, asyncio.Lock] = {}
        self._next_nonce: Dict[str, int] = {}

    def _lock_for(self, address: str) -> asyncio.Lock:
        if address not in self._locks:
            self._locks[address] = asyncio.Lock()
        return self._locks[address]

    @asynccontextmanager
    async def reserve(self, address: str):
        async with self._lock_for(address):
            if address not in self._next_nonce:
                self._next_nonce[address] = await self.w3.eth.get_transaction_count(address, "pending")

            nonce = self._next_nonce[address]
            try:
                yield nonce
            except BaseException:
                self._next_nonce.pop(address, None)
                raise

            self._next_nonce[address] = nonce + 1

    async def invalidate(self, address: str):
        """Forget the local counter so the next send re-reads the pending count"""
        async with self._lock_for(address):
            self._next_nonce.pop(address, None)


class ChainClient:
    """Thin async wrapper over web3 used by the oracle, risk reader and repayment code"""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        chain_id: Optional[int] = None,
        confirmation_timeout: Optional[float] = None,
        poll_latency: Optional[float] = None,
        web3: Optional[AsyncWeb3] = None,
    ):
        self.chain_id = chain_id or settings.CHAIN_ID
        self.confirmation_timeout = confirmation_timeout or settings.TX_CONFIRMATION_TIMEOUT_SECONDS
        self.poll_latency = poll_latency or settings.TX_POLL_LATENCY_SECONDS
        self.w3 = web3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(
            rpc_url or settings.rpc_endpoint,
            request_kwargs={"timeout": settings.RPC_REQUEST_TIMEOUT_SECONDS},
        ))
        self.nonces = NonceManager(self.w3)

    def contract(self, address: str, abi: list) -> AsyncContract:
        return self.w3.eth.contract(address=AsyncWeb3.to_checksum_address(address), abi=abi)

    async def call(self, contract_fn, description: str) -> Any:
        """Run a read-only contract call"""
        try:
            return await contract_fn.call()
        except NETWORK_ERRORS as e:
            raise TransientNetworkError(f"RPC read {description} failed: {e}") from e

    async def send_transaction(
        self,
        account: LocalAccount,
        contract_fn,
        action: str,
        value: int = 0,
    ) -> str:
        """Build, sign and broadcast a contract call; returns the 0x tx hash"""
        try:
            async with self.nonces.reserve(account.address) as nonce:
                tx = await contract_fn.build_transaction({
                    "from": account.address,
                    "nonce": nonce,
                    "value": value,
                    "chainId": self.chain_id,
                })
                signed = account.sign_transaction(tx)
                raw_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except ContractLogicError as e:
            raise OnChainRevertError(action, reason=str(e)) from e
        except NETWORK_ERRORS as e:
            raise TransientNetworkError(f"Sending {action} transaction failed: {e}") from e

        tx_hash = AsyncWeb3.to_hex(raw_hash)
        logger.info(f"{action} transaction sent", tx_hash=tx_hash, sender=account.address, nonce=nonce)
        return tx_hash

    async def wait_for_confirmation(self, tx_hash: str, action: str) -> Dict:
        """Block until the transaction is mined; revert or timeout is fatal"""
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash,
                timeout=self.confirmation_timeout,
                poll_latency=self.poll_latency,
            )
        except TimeExhausted as e:
            raise ConfirmationTimeoutError(tx_hash, self.confirmation_timeout) from e
        except NETWORK_ERRORS as e:
            raise TransientNetworkError(f"Waiting for {action} transaction {tx_hash} failed: {e}") from e

        if receipt["status"] != 1:
            raise OnChainRevertError(action, tx_hash=tx_hash)

        logger.info(f"{action} transaction confirmed", tx_hash=tx_hash, block=receipt.get("blockNumber"))
        return receipt

    async def submit_and_confirm(
        self,
        account: LocalAccount,
        contract_fn,
        action: str,
        value: int = 0,
    ) -> str:
        tx_hash = await self.send_transaction(account, contract_fn, action, value=value)
        try:
            await self.wait_for_confirmation(tx_hash, action)
        except TransientNetworkError:
            # The tx may have been dropped from the mempool
            await self.nonces.invalidate(account.address)
            raise
        return tx_hash
