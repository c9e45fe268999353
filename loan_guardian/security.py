import re
import httpx
from datetime import datetime, timedelta
from typing import Dict
import structlog
from .config import settings
from .database import get_redis

logger = structlog.get_logger()

# Wallet address validation regex
WALLET_ADDRESS_PATTERN = re.compile(r'^0x[a-fA-F0-9]{40}$')

def verify_wallet_address(wallet_address: str) -> bool:
    """Verify if wallet address is valid Ethereum format"""
    if not wallet_address:
        return False
    return bool(WALLET_ADDRESS_PATTERN.match(wallet_address))

class RateLimiter:
    """Redis sliding-window limiter for rule creation"""

    def __init__(self, max_requests: int = None, window_seconds: int = 60):
        self.window_seconds = window_seconds
        self.max_requests = max_requests or settings.RATE_LIMIT_PER_MINUTE

    async def check_rate_limit(self, client_ip: str) -> bool:
        """Check if request is within rate limits"""
        redis_client = get_redis()

        if not redis_client:
            return True

        current_time = datetime.utcnow()
        window_start = current_time - timedelta(seconds=self.window_seconds)
        rate_limit_key = f"rate_limit:rules:{client_ip}"

        try:
            async with redis_client.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(rate_limit_key, 0, window_start.timestamp())
                pipe.zcard(rate_limit_key)
                pipe.zadd(rate_limit_key, {str(current_time.timestamp()): current_time.timestamp()})
                pipe.expire(rate_limit_key, self.window_seconds + 10)
                results = await pipe.execute()

            current_count = results[1]
            if current_count >= self.max_requests:
                logger.warning("Rate limit exceeded",
                               ip=client_ip,
                               current_count=current_count,
                               max_requests=self.max_requests)
                return False

            return True

        except Exception as e:
            # Fail open: rule creation must not depend on Redis
            logger.error("Error checking rate limit", error=str(e), ip=client_ip)
            return True

# Global rate limiter instance
rate_limiter = RateLimiter()

async def check_rate_limit(client_ip: str) -> bool:
    """Check rate limit for a client IP"""
    return await rate_limiter.check_rate_limit(client_ip)

class EventLogger:
    """Ships structured lifecycle events to an external collector"""

    def __init__(self, sink_url: str = None, timeout: float = 10.0):
        self.sink_url = sink_url
        self.timeout = timeout

    async def log(self, event_type: str, data: Dict, level: str = "info"):
        """Send structured event; failures are logged and dropped"""
        if not self.sink_url:
            return

        event = {
            "timestamp": datetime.utcnow().isoformat(),
            "service": "loan_guardian",
            "event_type": event_type,
            "level": level,
            "data": data
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.sink_url, json=event)

            if response.status_code >= 400:
                logger.warning(f"Event sink rejected {event_type}", status_code=response.status_code)

        except Exception as e:
            logger.warning(f"Error shipping event {event_type}", error=str(e))

# Global event logger instance
event_logger = EventLogger(settings.EVENT_SINK_URL)

async def log_event(event_type: str, data: Dict, level: str = "info"):
    """Send a lifecycle event to the configured sink"""
    await event_logger.log(event_type, data, level)
