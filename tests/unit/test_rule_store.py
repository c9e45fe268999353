import pytest
from datetime import datetime
from unittest.mock import MagicMock

from bson import ObjectId
from pydantic import ValidationError

from loan_guardian.models import ProtectionRule, ProtectionRuleCreate, ManualRepayRequest
from loan_guardian.rule_store import RuleStore

from conftest import PAYER_ADDRESS, USER_ADDRESS


@pytest.mark.asyncio
class TestRuleStore:

    @pytest.fixture
    def store(self, mock_collection):
        return RuleStore(mock_collection)

    async def test_create_stores_camel_case_document(self, store, mock_collection):
        inserted_id = ObjectId()
        mock_collection.insert_one.return_value = MagicMock(inserted_id=inserted_id)
        rule = ProtectionRule(user=USER_ADDRESS, trigger_price="2000", repay_amount="100")

        created = await store.create(rule)

        assert created.id == str(inserted_id)
        document = mock_collection.insert_one.await_args.args[0]
        assert document["user"] == USER_ADDRESS
        assert document["triggerPrice"] == "2000"
        assert document["repayAmount"] == "100"
        assert document["isActive"] is True
        assert document["protocol"] == "AaveV3"
        assert document["chainId"] == 11155111
        assert "_id" not in document

    async def test_fetch_by_id_maps_document(self, store, mock_collection):
        oid = ObjectId()
        mock_collection.find_one.return_value = {
            "_id": oid,
            "user": USER_ADDRESS,
            "triggerPrice": "2000",
            "repayAmount": "100",
            "isActive": False,
            "protocol": "AaveV3",
            "chainId": 11155111,
            "collateralAsset": "ETH",
            "debtAsset": "PYUSD",
            "createdAt": datetime.utcnow(),
            "updatedAt": datetime.utcnow(),
        }

        rule = await store.fetch_by_id(str(oid))

        assert rule.id == str(oid)
        assert rule.is_active is False
        assert rule.trigger_price == "2000"
        mock_collection.find_one.assert_awaited_once_with({"_id": oid})

    async def test_fetch_missing_rule(self, store, mock_collection):
        mock_collection.find_one.return_value = None

        assert await store.fetch_by_id(str(ObjectId())) is None

    async def test_fetch_malformed_id(self, store, mock_collection):
        assert await store.fetch_by_id("not-an-object-id") is None
        mock_collection.find_one.assert_not_awaited()

    async def test_deactivate_is_single_atomic_update(self, store, mock_collection):
        oid = ObjectId()

        assert await store.deactivate(str(oid), "0xrepay") is True

        query, update = mock_collection.update_one.await_args.args
        assert query == {"_id": oid}
        fields = update["$set"]
        assert fields["isActive"] is False
        assert fields["lastRepayTxHash"] == "0xrepay"
        assert isinstance(fields["deactivatedAt"], datetime)
        assert isinstance(fields["updatedAt"], datetime)

    async def test_update_fields_unmatched(self, store, mock_collection):
        mock_collection.update_one.return_value = MagicMock(matched_count=0)

        assert await store.update_fields(str(ObjectId()), {"is_active": False}) is False

    async def test_count_active(self, store, mock_collection):
        mock_collection.count_documents.return_value = 3

        assert await store.count_active() == 3
        mock_collection.count_documents.assert_awaited_once_with({"isActive": True})


class TestProtectionRuleCreate:

    def test_defaults_applied(self):
        request = ProtectionRuleCreate.model_validate({
            "user": USER_ADDRESS, "triggerPrice": 2000, "repayAmount": "100"
        })

        rule = request.to_rule()

        assert request.missing_required_fields() == []
        assert rule.trigger_price == "2000"
        assert rule.protocol == "AaveV3"
        assert rule.chain_id == 11155111
        assert rule.collateral_asset == "ETH"
        assert rule.debt_asset == "PYUSD"
        assert rule.is_active is True

    def test_explicit_values_kept(self):
        request = ProtectionRuleCreate.model_validate({
            "user": USER_ADDRESS, "triggerPrice": "1850.5", "repayAmount": "25",
            "payerAddress": PAYER_ADDRESS, "chainId": 1, "debtAsset": "USDC",
        })

        rule = request.to_rule()

        assert rule.payer_address == PAYER_ADDRESS
        assert rule.chain_id == 1
        assert rule.debt_asset == "USDC"

    def test_missing_fields_reported_in_camel_case(self):
        request = ProtectionRuleCreate.model_validate({"user": USER_ADDRESS})

        assert request.missing_required_fields() == ["triggerPrice", "repayAmount"]

    @pytest.mark.parametrize("body", [
        {"user": "0x123", "triggerPrice": "2000", "repayAmount": "100"},
        {"user": USER_ADDRESS, "triggerPrice": "-1", "repayAmount": "100"},
        {"user": USER_ADDRESS, "triggerPrice": "2000", "repayAmount": "lots"},
    ])
    def test_invalid_values_rejected(self, body):
        with pytest.raises(ValidationError):
            ProtectionRuleCreate.model_validate(body)


class TestManualRepayRequest:

    def test_valid_request(self):
        request = ManualRepayRequest.model_validate({"repayAmount": "10.5", "userAddress": USER_ADDRESS})

        assert request.repay_amount == "10.5"
        assert request.payer_address is None

    def test_zero_amount_rejected(self):
        with pytest.raises(ValidationError):
            ManualRepayRequest.model_validate({"repayAmount": "0", "userAddress": USER_ADDRESS})
