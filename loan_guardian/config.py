from pydantic_settings import BaseSettings
from typing import Optional, List

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    LOG_LEVEL: str = "INFO"
    SERVICE_PORT: int = 8002

    # MongoDB Configuration
    MONGODB_URI: str
    MONGO_DB_NAME: str = "loan_guardian"
    MONGO_CONNECT_TIMEOUT_MS: int = 30000

    # Redis Configuration
    ENABLE_REDIS: bool = False
    REDIS_URL: str = "redis://localhost:6379/0"
    RATE_LIMIT_PER_MINUTE: int = 30

    # Chain / RPC
    CHAIN_ID: int = 11155111
    RPC_URL: Optional[str] = None
    ALCHEMY_API_KEY: Optional[str] = None
    RPC_REQUEST_TIMEOUT_SECONDS: int = 30
    TX_CONFIRMATION_TIMEOUT_SECONDS: int = 120
    TX_POLL_LATENCY_SECONDS: float = 2.0

    # Signing credentials (delegatee submits repay + price updates, payer grants allowance)
    DELEGATEE_PRIVATE_KEY: Optional[str] = None
    PAYER_PRIVATE_KEY: Optional[str] = None
    PAYER_ADDRESS: Optional[str] = None

    # Approval variant: "wallet" signs approve() with the payer key,
    # "approval_service" delegates to an external approval tool
    APPROVAL_MODE: str = "wallet"
    APPROVAL_SERVICE_URL: Optional[str] = None
    APPROVAL_SERVICE_API_KEY: Optional[str] = None
    GAS_SPONSOR_ENABLED: bool = False
    GAS_SPONSOR_API_KEY: Optional[str] = None
    GAS_SPONSOR_POLICY_ID: Optional[str] = None

    # Lending protocol (Aave V3 on Sepolia)
    AAVE_POOL_ADDRESS: str = "0x6Ae43d3271ff6888e7Fc43Fd7321a503ff738951"
    DEBT_ASSET_ADDRESS: str = "0x94a9D9AC8a22534E3FaCa9F4e7F2E2cf85d5E4C8"
    DEBT_ASSET_DECIMALS: int = 6
    INTEREST_RATE_MODE: int = 2  # variable

    # Price oracle (Pyth)
    HERMES_BASE_URL: str = "https://hermes.pyth.network"
    PYTH_CONTRACT_ADDRESS: str = "0xDd24F84d36BF92C65F92307595335bdFab5Bbd21"
    PYTH_PRICE_FEED_ID: str = "0xff61491a931112ddf1bd8147cd1b641375f79f5825126d665480874634fd0ace"
    PRICE_CONSUMER_ADDRESS: str = "0x0000000000000000000000000000000000000000"

    # Loan protection job
    HEALTH_FACTOR_DANGER_THRESHOLD: float = 1.2
    LOAN_PROTECTION_INTERVAL_SECONDS: int = 60
    RETRY_BACKOFF_ENABLED: bool = False
    RETRY_BACKOFF_MAX_SECONDS: int = 900

    # Scheduler
    SCHEDULER_PROCESS_EVERY_SECONDS: float = 10.0
    SCHEDULER_LOCK_LIFETIME_SECONDS: int = 600
    SCHEDULER_MAX_CONCURRENCY: int = 20

    # Rule defaults
    DEFAULT_PROTOCOL: str = "AaveV3"
    DEFAULT_COLLATERAL_ASSET: str = "ETH"
    DEFAULT_DEBT_ASSET: str = "PYUSD"

    # Structured event sink (optional)
    EVENT_SINK_URL: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Allow extra fields in .env

    @property
    def rpc_endpoint(self) -> Optional[str]:
        """Resolve the JSON-RPC endpoint, falling back to Alchemy's Sepolia gateway"""
        if self.RPC_URL:
            return self.RPC_URL
        if self.ALCHEMY_API_KEY:
            return f"https://eth-sepolia.g.alchemy.com/v2/{self.ALCHEMY_API_KEY}"
        return None

# Global settings instance
settings = Settings()

# MongoDB Collection Names
class Collections:
    RULES = "protection_rules"
    JOBS = "protection_jobs"

# Job names
class JobNames:
    LOAN_PROTECTION = "execute-loan-protection"

# Approval modes
class ApprovalMode:
    WALLET = "wallet"
    APPROVAL_SERVICE = "approval_service"

    ALL = (WALLET, APPROVAL_SERVICE)

# Fixed-point precision of on-chain values
HEALTH_FACTOR_DECIMALS = 18
NATIVE_DECIMALS = 18


def validate_chain_settings(config: Settings = None) -> None:
    """Fail fast when the chain credentials the engine needs are missing"""
    from .error_handling import ConfigurationError

    config = config or settings
    errors: List[str] = []

    if not config.rpc_endpoint:
        errors.append("RPC_URL or ALCHEMY_API_KEY must be set")

    if not config.DELEGATEE_PRIVATE_KEY:
        errors.append("DELEGATEE_PRIVATE_KEY must be set")

    if config.APPROVAL_MODE not in ApprovalMode.ALL:
        errors.append(f"APPROVAL_MODE must be one of {', '.join(ApprovalMode.ALL)}")
    elif config.APPROVAL_MODE == ApprovalMode.WALLET and not config.PAYER_PRIVATE_KEY:
        errors.append("PAYER_PRIVATE_KEY must be set when APPROVAL_MODE=wallet")
    elif config.APPROVAL_MODE == ApprovalMode.APPROVAL_SERVICE:
        if not config.APPROVAL_SERVICE_URL:
            errors.append("APPROVAL_SERVICE_URL must be set when APPROVAL_MODE=approval_service")
        if not config.PAYER_ADDRESS:
            errors.append("PAYER_ADDRESS must be set when APPROVAL_MODE=approval_service")

    if config.PRICE_CONSUMER_ADDRESS == "0x0000000000000000000000000000000000000000":
        errors.append("PRICE_CONSUMER_ADDRESS must be set")

    if errors:
        raise ConfigurationError("; ".join(errors))
