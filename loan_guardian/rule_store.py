"""
MongoDB-backed storage of protection rules.
"""
from datetime import datetime
from typing import Any, Dict, Optional

import structlog
from bson import ObjectId
from bson.errors import InvalidId

from .models import ProtectionRule

logger = structlog.get_logger()


def _object_id(rule_id: str) -> Optional[ObjectId]:
    try:
        return ObjectId(rule_id)
    except (InvalidId, TypeError):
        return None


class RuleStore:
    """Fetch-by-id and atomic single-document updates over the rules collection"""

    def __init__(self, collection):
        self.collection = collection

    async def create(self, rule: ProtectionRule) -> ProtectionRule:
        result = await self.collection.insert_one(rule.to_document())
        rule.id = str(result.inserted_id)
        logger.info("Protection rule stored", rule_id=rule.id, user=rule.user)
        return rule

    async def fetch_by_id(self, rule_id: str) -> Optional[ProtectionRule]:
        """Return the rule, or None when the id is unknown or malformed"""
        oid = _object_id(rule_id)
        if oid is None:
            return None

        document = await self.collection.find_one({"_id": oid})
        if document is None:
            return None

        return ProtectionRule.model_validate(document)

    async def update_fields(self, rule_id: str, fields: Dict[str, Any]) -> bool:
        """Atomically $set the given python-named fields; False if no rule matched"""
        oid = _object_id(rule_id)
        if oid is None:
            return False

        update = {ProtectionRule.storage_key(name): value for name, value in fields.items()}
        update[ProtectionRule.storage_key("updated_at")] = datetime.utcnow()

        result = await self.collection.update_one({"_id": oid}, {"$set": update})
        return result.matched_count > 0

    async def deactivate(self, rule_id: str, repay_tx_hash: Optional[str] = None) -> bool:
        return await self.update_fields(rule_id, {
            "is_active": False,
            "deactivated_at": datetime.utcnow(),
            "last_repay_tx_hash": repay_tx_hash,
        })

    async def count_active(self) -> int:
        return await self.collection.count_documents({ProtectionRule.storage_key("is_active"): True})
