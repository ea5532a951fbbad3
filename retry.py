"""
Retry with capped exponential backoff for network-classified failures.
"""
import asyncio
import logging

from pymongo.errors import AutoReconnect, ConnectionFailure, NetworkTimeout, ServerSelectionTimeoutError

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
BASE_DELAY = 2.0

NETWORK_ERRORS = (AutoReconnect, ConnectionFailure, NetworkTimeout, ServerSelectionTimeoutError,
                  ConnectionError, TimeoutError)
NETWORK_MARKERS = ("network", "timed out", "timeout", "connection")


def is_network_error(exc: BaseException) -> bool:
    if isinstance(exc, NETWORK_ERRORS):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in NETWORK_MARKERS)


def backoff_delays(attempts: int = MAX_ATTEMPTS, base: float = BASE_DELAY):
    # one delay between each pair of attempts: 2s, 4s, ...
    return [base * (2 ** i) for i in range(attempts - 1)]


async def with_retry(fn, *args, label: str = "request", attempts: int = MAX_ATTEMPTS,
                     base_delay: float = BASE_DELAY, sleep=asyncio.sleep):
    """Run the blocking `fn` on a worker thread, retrying network errors.

    Non-network errors propagate on the first failure. After the last
    attempt the network error propagates too.
    """
    delays = backoff_delays(attempts, base_delay)
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.to_thread(fn, *args)
        except Exception as e:
            if not is_network_error(e) or attempt == attempts:
                raise
            delay = delays[attempt - 1]
            logger.warning("%s failed (attempt %d/%d): %s; retrying in %.0fs",
                           label, attempt, attempts, e, delay)
            await sleep(delay)
