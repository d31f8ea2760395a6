# retry.py
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

log = logging.getLogger(__name__)

RATE_LIMIT_STATUS = 429
RATE_LIMIT_CATEGORY = "RESOURCE_EXHAUSTED"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 1.0      # seconds
    factor: float = 2.0
    max_delay: float = 15.0
    jitter: float = 0.25         # upper bound of the random extra per wait

    def delay_for(self, retry_no: int) -> float:
        """Backoff before retry number `retry_no` (1-based), without jitter."""
        return min(self.base_delay * (self.factor ** (retry_no - 1)), self.max_delay)


def _status_of(exc: BaseException) -> Optional[int]:
    for attr in ("code", "status_code", "status"):
        v = getattr(exc, attr, None)
        if isinstance(v, int):
            return v
    resp = getattr(exc, "response", None)
    v = getattr(resp, "status_code", None)
    return v if isinstance(v, int) else None


def is_rate_limited(exc: BaseException) -> bool:
    """True for a 429 or a RESOURCE_EXHAUSTED error from the Sheets API."""
    if _status_of(exc) == RATE_LIMIT_STATUS:
        return True
    # gspread's APIError keeps the decoded error body on `.error`
    err = getattr(exc, "error", None)
    if isinstance(err, dict) and err.get("status") == RATE_LIMIT_CATEGORY:
        return True
    return False


class RetryingClient:
    """Runs blocking store calls off the event loop and retries rate limits.

    Any other error, or the last rate-limit error once attempts are used up,
    is raised unchanged.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._rand = rand

    async def execute(self, fn: Callable[..., Any], *args, description: str = "Sheets API call", **kwargs) -> Any:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await asyncio.to_thread(fn, *args, **kwargs)
            except Exception as e:
                if not is_rate_limited(e) or attempt >= self.policy.max_attempts:
                    raise
                wait = self.policy.delay_for(attempt) + self._rand() * self.policy.jitter
                log.warning(
                    "%s rate limited (attempt %d/%d), retrying in %.2fs",
                    description, attempt, self.policy.max_attempts, wait,
                )
                await self._sleep(wait)
