import time
from typing import Callable, Sequence, TypeVar

T = TypeVar("T")

MAX_RETRIES = 3
RETRY_DELAYS = (1, 5, 15)  # seconds


def with_retry(
    operation: Callable[[], T],
    operation_name: str,
    max_retries: int = MAX_RETRIES,
    delays: Sequence[float] = RETRY_DELAYS,
    sleep: Callable[[float], None] = time.sleep
) -> T:
    """
    Run `operation`, retrying up to `max_retries` times with the given delays.
    The last failure is re-raised.
    """
    for attempt in range(max_retries + 1):
        try:
            return operation()
        except Exception:
            if attempt == max_retries:
                raise
            sleep(delays[min(attempt, len(delays) - 1)])
            print(f"[Retry] Retrying {operation_name}, attempt {attempt + 2}/{max_retries + 1}")
