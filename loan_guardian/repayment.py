"""
Two-phase debt repayment.

Phase A makes sure the payer has granted the lending pool an allowance that
covers the amount, approving exactly the amount only when the current
allowance falls short. Phase B has the delegatee call repay() on behalf of the
debt owner, so the delegatee pays gas while the pool pulls the debt asset from
the payer. Nothing is rolled back on failure: the allowance pre-check is what
makes re-running the whole sequence on the next tick safe.
"""
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Protocol

import httpx
import structlog
from eth_account.signers.local import LocalAccount
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from .abis import AAVE_POOL_ABI, ERC20_ABI
from .chain import ChainClient, load_account
from .config import settings, Settings, ApprovalMode
from .error_handling import ConfigurationError, RepaymentError, TransientNetworkError
from .models import RepaymentOutcome

logger = structlog.get_logger()


def to_base_units(amount: str, decimals: int) -> int:
    """Convert a display amount such as "100.5" to the token's smallest unit"""
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {amount!r}")

    if not value.is_finite() or value <= 0:
        raise ValueError(f"Amount must be greater than zero: {amount!r}")

    scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"Amount {amount} has more than {decimals} decimal places")

    return int(scaled)


class Approver(Protocol):
    """Capability of the payer: grant the pool an allowance over the debt asset"""

    async def ensure_allowance(self, payer_address: Optional[str], amount: int) -> Optional[str]:
        """Return the approval tx hash, or None when the allowance already covered amount"""
        ...


class Repayer(Protocol):
    """Capability of the delegatee: submit repay() for a debt owner"""

    async def repay(self, debt_owner: str, amount: int) -> str:
        ...


class WalletApprover:
    """Approves with the payer's own key"""

    def __init__(
        self,
        chain: ChainClient,
        payer: LocalAccount,
        token_address: Optional[str] = None,
        spender_address: Optional[str] = None,
    ):
        self.chain = chain
        self.payer = payer
        self.token = chain.contract(token_address or settings.DEBT_ASSET_ADDRESS, ERC20_ABI)
        self.spender = chain.w3.to_checksum_address(spender_address or settings.AAVE_POOL_ADDRESS)

    async def ensure_allowance(self, payer_address: Optional[str], amount: int) -> Optional[str]:
        if payer_address and payer_address.lower() != self.payer.address.lower():
            raise ValueError(f"Configured payer key does not control {payer_address}")

        current = await self.chain.call(
            self.token.functions.allowance(self.payer.address, self.spender), "allowance"
        )
        if current >= amount:
            logger.info("Allowance already sufficient, skipping approval",
                        payer=self.payer.address, allowance=current, amount=amount)
            return None

        logger.info("Approving debt asset to lending pool", payer=self.payer.address, amount=amount)
        return await self.chain.submit_and_confirm(
            self.payer, self.token.functions.approve(self.spender, amount), "Approval"
        )


class ApprovalServiceApprover:
    """Delegates approval to an external ERC20 approval tool.

    The tool exposes ``/precheck`` (reports ``alreadyApproved``) and
    ``/execute`` (returns ``approvalTxHash``); both take the tool parameters
    and the payer as the delegator. The returned hash is then awaited on-chain
    like a wallet approval.
    """

    def __init__(
        self,
        chain: ChainClient,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        config: Optional[Settings] = None,
        timeout: float = 30.0,
    ):
        self.chain = chain
        self.config = config or settings
        self.base_url = base_url or self.config.APPROVAL_SERVICE_URL
        self.api_key = api_key or self.config.APPROVAL_SERVICE_API_KEY
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _tool_params(self, amount: int) -> Dict[str, Any]:
        return {
            "alchemyGasSponsor": self.config.GAS_SPONSOR_ENABLED,
            "alchemyGasSponsorApiKey": self.config.GAS_SPONSOR_API_KEY,
            "alchemyGasSponsorPolicyId": self.config.GAS_SPONSOR_POLICY_ID,
            "chainId": self.config.CHAIN_ID,
            "rpcUrl": self.config.rpc_endpoint,
            "spenderAddress": self.config.AAVE_POOL_ADDRESS,
            "tokenAddress": self.config.DEBT_ASSET_ADDRESS,
            "tokenAmount": str(amount),
        }

    async def _post(self, endpoint: str, payload: Dict) -> Dict:
        try:
            async with httpx.AsyncClient(base_url=self.base_url, headers=self._headers(),
                                         timeout=self.timeout) as client:
                response = await client.post(endpoint, json=payload)
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as e:
            raise RuntimeError(f"Approval service {endpoint} returned {e.response.status_code}") from e
        except httpx.RequestError as e:
            raise TransientNetworkError(f"Approval service unreachable: {e}") from e

        if not body.get("success"):
            raise RuntimeError(f"Approval service {endpoint} failed: {body}")
        return body.get("result") or {}

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=retry_if_exception_type(TransientNetworkError),
        reraise=True
    )
    async def precheck(self, payload: Dict) -> Dict:
        return await self._post("/precheck", payload)

    async def ensure_allowance(self, payer_address: Optional[str], amount: int) -> Optional[str]:
        payer_address = payer_address or self.config.PAYER_ADDRESS
        payload = {
            "toolParams": self._tool_params(amount),
            "context": {"delegatorPkpEthAddress": payer_address},
        }

        precheck = await self.precheck(payload)
        if precheck.get("alreadyApproved"):
            logger.info("Approval already exists, skipping approval transaction", payer=payer_address)
            return None

        result = await self._post("/execute", payload)
        approval_hash = result.get("approvalTxHash")
        if not approval_hash:
            raise RuntimeError(f"Approval service returned no approvalTxHash: {result}")

        logger.info("Approval submitted by approval service", payer=payer_address, tx_hash=approval_hash)
        await self.chain.wait_for_confirmation(approval_hash, "Approval")
        return approval_hash


class DelegateeRepayer:
    """Calls Pool.repay with the backend delegatee key"""

    def __init__(
        self,
        chain: ChainClient,
        delegatee: LocalAccount,
        pool_address: Optional[str] = None,
        asset_address: Optional[str] = None,
        interest_rate_mode: Optional[int] = None,
    ):
        self.chain = chain
        self.delegatee = delegatee
        self.pool = chain.contract(pool_address or settings.AAVE_POOL_ADDRESS, AAVE_POOL_ABI)
        self.asset = chain.w3.to_checksum_address(asset_address or settings.DEBT_ASSET_ADDRESS)
        self.interest_rate_mode = interest_rate_mode or settings.INTEREST_RATE_MODE

    async def repay(self, debt_owner: str, amount: int) -> str:
        logger.info("Executing repay via delegatee", debt_owner=debt_owner,
                    delegatee=self.delegatee.address, amount=amount)
        return await self.chain.submit_and_confirm(
            self.delegatee,
            self.pool.functions.repay(
                self.asset, amount, self.interest_rate_mode,
                self.chain.w3.to_checksum_address(debt_owner),
            ),
            "Repay",
        )


class RepaymentExecutor:
    """Runs allowance then repay; either failure raises RepaymentError"""

    def __init__(self, approver: Approver, repayer: Repayer, decimals: Optional[int] = None):
        self.approver = approver
        self.repayer = repayer
        self.decimals = decimals if decimals is not None else settings.DEBT_ASSET_DECIMALS

    async def execute(
        self,
        debt_owner: str,
        repay_amount: str,
        payer_address: Optional[str] = None,
    ) -> RepaymentOutcome:
        try:
            amount = to_base_units(repay_amount, self.decimals)
        except ValueError as e:
            raise RepaymentError("amount", e) from e

        try:
            approval_hash = await self.approver.ensure_allowance(payer_address, amount)
        except Exception as e:
            raise RepaymentError("allowance", e) from e

        try:
            repay_hash = await self.repayer.repay(debt_owner, amount)
        except Exception as e:
            raise RepaymentError("repay", e) from e

        logger.info("Repayment completed", debt_owner=debt_owner, amount=amount,
                    approval_hash=approval_hash, repay_hash=repay_hash)

        return RepaymentOutcome(
            approval_performed=approval_hash is not None,
            approval_hash=approval_hash,
            repay_hash=repay_hash,
            amount_base_units=amount,
        )


def build_approver(chain: ChainClient, config: Optional[Settings] = None) -> Approver:
    """Pick the approval variant from APPROVAL_MODE"""
    config = config or settings

    if config.APPROVAL_MODE == ApprovalMode.WALLET:
        return WalletApprover(chain, load_account(config.PAYER_PRIVATE_KEY),
                              token_address=config.DEBT_ASSET_ADDRESS,
                              spender_address=config.AAVE_POOL_ADDRESS)
    if config.APPROVAL_MODE == ApprovalMode.APPROVAL_SERVICE:
        return ApprovalServiceApprover(chain, config=config)

    raise ConfigurationError(f"Unknown APPROVAL_MODE: {config.APPROVAL_MODE}")
