import pytest
import httpx
from decimal import Decimal
from unittest.mock import AsyncMock, patch

from loan_guardian.error_handling import (
    CircuitBreakerOpenError, OnChainRevertError, OracleResponseError, OracleUnavailableError, TransientNetworkError
)
from loan_guardian.oracle import HermesClient, OracleSync, parse_price_update, scale_price
from loan_guardian.risk_reader import RiskReader

from conftest import FakeChain, USER_ADDRESS

FEED_ID = "0xff61491a931112ddf1bd8147cd1b641375f79f5825126d665480874634fd0ace"
PYTH = "0xDd24F84d36BF92C65F92307595335bdFab5Bbd21"
CONSUMER = "0x5FbDB2315678afecb367f032d93F642f64180aa3"


class TestParsePriceUpdate:

    def test_prefixes_hex(self, hermes_payload):
        assert parse_price_update(hermes_payload) == ["0x504e41550100000003b8"]

    def test_keeps_existing_prefix(self):
        assert parse_price_update({"binary": {"data": ["0xabcd"]}}) == ["0xabcd"]

    @pytest.mark.parametrize("payload", [
        {},
        {"binary": {}},
        {"binary": {"data": []}},
        {"binary": {"data": "abcd"}},
        {"binary": {"data": [123]}},
        {"binary": {"data": [""]}},
        [],
    ])
    def test_malformed_payloads(self, payload):
        with pytest.raises(OracleResponseError):
            parse_price_update(payload)


class TestScalePrice:

    def test_negative_exponent(self):
        assert scale_price(190000000000, -8) == Decimal("1900")

    def test_fractional_price(self):
        assert scale_price(190012345678, -8) == Decimal("1900.12345678")

    def test_non_positive_price(self):
        with pytest.raises(OracleResponseError):
            scale_price(0, -8)


@pytest.mark.asyncio
class TestHermesClient:

    async def test_fetch_latest_price_update(self, hermes_payload):
        client = HermesClient(base_url="http://hermes.test")

        with patch.object(HermesClient, "_make_request", AsyncMock(return_value=hermes_payload)) as mock_request:
            result = await client.fetch_latest_price_update([FEED_ID])

        assert result == ["0x504e41550100000003b8"]
        _, method, endpoint = mock_request.await_args.args
        assert (method, endpoint) == ("GET", "/v2/updates/price/latest")
        assert mock_request.await_args.kwargs["params"] == {"ids[]": [FEED_ID]}

    async def test_transport_failure_is_unavailable(self):
        client = HermesClient(base_url="http://hermes.test")

        with patch.object(HermesClient, "_make_request", AsyncMock(side_effect=httpx.ConnectError("refused"))):
            with pytest.raises(OracleUnavailableError) as exc_info:
                await client.fetch_latest_price_update([FEED_ID])

        assert isinstance(exc_info.value, TransientNetworkError)

    async def test_circuit_opens_after_repeated_failures(self):
        client = HermesClient(base_url="http://hermes.test")
        mock_request = AsyncMock(side_effect=httpx.ConnectError("refused"))

        with patch.object(HermesClient, "_make_request", mock_request):
            for _ in range(3):
                with pytest.raises(OracleUnavailableError):
                    await client.fetch_latest_price_update([FEED_ID])

            with pytest.raises(CircuitBreakerOpenError):
                await client.fetch_latest_price_update([FEED_ID])

        assert mock_request.await_count == 3
        assert client.circuit_breaker.get_stats()["state"] == "open"

    async def test_malformed_payload_does_not_open_circuit(self):
        client = HermesClient(base_url="http://hermes.test")

        with patch.object(HermesClient, "_make_request", AsyncMock(return_value={"binary": {}})):
            for _ in range(4):
                with pytest.raises(OracleResponseError):
                    await client.fetch_latest_price_update([FEED_ID])

        assert client.circuit_breaker.get_stats()["state"] == "closed"


@pytest.mark.asyncio
class TestOracleSync:

    @pytest.fixture
    def chain(self):
        chain = FakeChain()
        chain.reads["getUpdateFee"] = 7
        chain.reads["getETHPrice"] = (190000000000, -8)
        return chain

    @pytest.fixture
    def hermes(self):
        hermes = AsyncMock()
        hermes.fetch_latest_price_update.return_value = ["0xabcd"]
        return hermes

    async def test_pushes_update_then_reads_price(self, chain, hermes, delegatee_account):
        sync = OracleSync(chain, hermes, delegatee_account, feed_id=FEED_ID,
                          pyth_address=PYTH, consumer_address=CONSUMER)

        price = await sync.update_and_get_price()

        assert price == Decimal("1900")
        hermes.fetch_latest_price_update.assert_awaited_once_with([FEED_ID])
        assert len(chain.sent) == 1
        update = chain.sent[0]
        assert update["name"] == "updatePrices"
        assert update["args"] == ([b"\xab\xcd"],)
        assert update["value"] == 7
        assert update["sender"] == delegatee_account.address

    async def test_update_revert_prevents_price_read(self, chain, hermes, delegatee_account):
        chain.reverting.add("updatePrices")
        chain.reads["getETHPrice"] = AssertionError("price read before update confirmed")
        sync = OracleSync(chain, hermes, delegatee_account, pyth_address=PYTH, consumer_address=CONSUMER)

        with pytest.raises(OnChainRevertError) as exc_info:
            await sync.update_and_get_price()

        assert exc_info.value.action == "Price update"

    async def test_invalid_hex_is_response_error(self, chain, hermes, delegatee_account):
        hermes.fetch_latest_price_update.return_value = ["0xzz"]
        sync = OracleSync(chain, hermes, delegatee_account, pyth_address=PYTH, consumer_address=CONSUMER)

        with pytest.raises(OracleResponseError):
            await sync.update_and_get_price()
        assert chain.sent == []


@pytest.mark.asyncio
class TestRiskReader:

    async def test_health_factor_scaled_from_wad(self):
        chain = FakeChain()
        chain.reads["getUserAccountData"] = (10 ** 20, 5 * 10 ** 19, 0, 8250, 8000, 1050000000000000000)

        health_factor = await RiskReader(chain).get_health_factor(USER_ADDRESS)

        assert health_factor == Decimal("1.05")

    async def test_read_failure_propagates(self):
        chain = FakeChain()
        chain.reads["getUserAccountData"] = TransientNetworkError("rpc down")

        with pytest.raises(TransientNetworkError):
            await RiskReader(chain).get_health_factor(USER_ADDRESS)
