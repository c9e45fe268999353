from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Optional, Dict, Any
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from .config import settings
from .security import verify_wallet_address


def _normalize_decimal(value: Any, field_name: str) -> Optional[str]:
    if value is None:
        return None
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValueError(f"{field_name} must be a decimal number")
    if not amount.is_finite() or amount <= 0:
        raise ValueError(f"{field_name} must be greater than zero")
    return str(amount)


# Base Models
class TimestampedModel(BaseModel):
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


# Rule Models
class ProtectionRule(TimestampedModel):
    """A user's loan protection rule, persisted with camelCase keys"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: Optional[str] = Field(default=None, alias="_id")
    user: str
    payer_address: Optional[str] = None
    trigger_price: str
    repay_amount: str
    is_active: bool = True

    protocol: str = settings.DEFAULT_PROTOCOL
    chain_id: int = settings.CHAIN_ID
    collateral_asset: str = settings.DEFAULT_COLLATERAL_ASSET
    debt_asset: str = settings.DEFAULT_DEBT_ASSET

    deactivated_at: Optional[datetime] = None
    last_repay_tx_hash: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def stringify_object_id(cls, v):
        return str(v) if v is not None else None

    @property
    def trigger_price_value(self) -> Decimal:
        return Decimal(self.trigger_price)

    @classmethod
    def storage_key(cls, field_name: str) -> str:
        """Document key a python field is persisted under"""
        return cls.model_fields[field_name].alias or to_camel(field_name)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude={"id"})

    def to_response(self) -> Dict[str, Any]:
        data = self.model_dump(by_alias=True, exclude={"id"}, mode="json")
        data["id"] = self.id
        return data


class ProtectionRuleCreate(BaseModel):
    """Body of POST /rules; required fields are checked by the route"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user: Optional[str] = None
    trigger_price: Optional[str] = None
    repay_amount: Optional[str] = None
    payer_address: Optional[str] = None
    protocol: Optional[str] = None
    chain_id: Optional[int] = None
    collateral_asset: Optional[str] = None
    debt_asset: Optional[str] = None

    @field_validator("user", "payer_address")
    @classmethod
    def validate_address(cls, v):
        if v is None or v == "":
            return None
        if not verify_wallet_address(v):
            raise ValueError("Invalid Ethereum address format")
        return v

    @field_validator("trigger_price", mode="before")
    @classmethod
    def validate_trigger_price(cls, v):
        return _normalize_decimal(v, "triggerPrice") if v not in (None, "") else None

    @field_validator("repay_amount", mode="before")
    @classmethod
    def validate_repay_amount(cls, v):
        return _normalize_decimal(v, "repayAmount") if v not in (None, "") else None

    def missing_required_fields(self) -> list:
        return [
            alias for name, alias in (
                ("user", "user"),
                ("trigger_price", "triggerPrice"),
                ("repay_amount", "repayAmount"),
            )
            if getattr(self, name) is None
        ]

    def to_rule(self) -> ProtectionRule:
        """Build a rule, filling in the protocol defaults"""
        return ProtectionRule(
            user=self.user,
            payer_address=self.payer_address or settings.PAYER_ADDRESS,
            trigger_price=self.trigger_price,
            repay_amount=self.repay_amount,
            protocol=self.protocol or settings.DEFAULT_PROTOCOL,
            chain_id=self.chain_id or settings.CHAIN_ID,
            collateral_asset=self.collateral_asset or settings.DEFAULT_COLLATERAL_ASSET,
            debt_asset=self.debt_asset or settings.DEFAULT_DEBT_ASSET,
        )


class ManualRepayRequest(BaseModel):
    """Body of POST /test-repay"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    repay_amount: str
    user_address: str
    payer_address: Optional[str] = None

    @field_validator("user_address", "payer_address")
    @classmethod
    def validate_address(cls, v):
        if v is not None and not verify_wallet_address(v):
            raise ValueError("Invalid Ethereum address format")
        return v

    @field_validator("repay_amount", mode="before")
    @classmethod
    def validate_repay_amount(cls, v):
        return _normalize_decimal(v, "repayAmount")


# Engine results
class ConditionEvaluation(BaseModel):
    health_factor: Decimal
    current_price: Decimal
    trigger_price: Decimal
    health_factor_threshold: Decimal
    triggered: bool


class RepaymentOutcome(BaseModel):
    approval_performed: bool
    approval_hash: Optional[str] = None
    repay_hash: str
    amount_base_units: int


class JobOutcome(str, Enum):
    INACTIVE_EXIT = "inactive_exit"
    SKIPPED = "skipped"
    DEACTIVATED = "deactivated"
    ERROR = "error"


class JobRunResult(BaseModel):
    """What a single rule execution did; the scheduler only ever sees this"""
    rule_id: str
    outcome: JobOutcome
    evaluation: Optional[ConditionEvaluation] = None
    repayment: Optional[RepaymentOutcome] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    removal_failed: bool = False
    duration_seconds: float = 0.0

    @property
    def failed(self) -> bool:
        return self.outcome == JobOutcome.ERROR


# Scheduler Models
class ScheduledJob(BaseModel):
    id: Optional[str] = Field(default=None, alias="_id")
    name: str
    rule_id: str
    interval_seconds: int
    next_run_at: datetime
    locked_at: Optional[datetime] = None
    lock_owner: Optional[str] = None
    last_run_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    last_outcome: Optional[str] = None
    failure_count: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("id", mode="before")
    @classmethod
    def stringify_object_id(cls, v):
        return str(v) if v is not None else None


# API Response Models
class SystemStatus(BaseModel):
    status: str = "operational"
    version: str = "1.0.0"
    uptime_seconds: int
    active_rules: int
    scheduler: Dict[str, Any]
    database_status: Dict[str, Any]
    oracle_circuit: Dict[str, Any]
    error_summary: Dict[str, Any]
