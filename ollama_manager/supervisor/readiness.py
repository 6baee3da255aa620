import time
import logging
import threading
from enum import Enum
from typing import Callable, Iterator

import requests

log = logging.getLogger(__name__)


class Readiness(Enum):
    READY = "ready"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


def backoff_delays(initial: float, maximum: float, factor: float = 2.0) -> Iterator[float]:
    """Yields initial, initial*factor, ... capped at `maximum`, forever."""
    delay = initial
    while True:
        yield min(delay, maximum)
        delay = min(delay * factor, maximum)


def wait_for_service(url: str, timeout: float, initial_delay: float, max_delay: float,
                     request_timeout: float, cancel_event: threading.Event,
                     session: requests.Session = None,
                     clock: Callable[[], float] = time.monotonic) -> Readiness:
    """
    Polls `url` until it answers with a 2xx status, using exponential backoff.

    Connection errors and non-2xx answers are expected while the service boots
    and are retried. Each delay is clipped to the remaining time, so a
    service that never answers fails at the deadline rather than after it.

    :param cancel_event: Set to abandon polling; also used for the backoff sleeps.
    :return: READY, TIMEOUT, or CANCELLED if `cancel_event` was set.
    """
    session = session or requests.Session()
    start_time = clock()
    deadline = start_time + timeout
    delays = backoff_delays(initial_delay, max_delay)

    log.info(f"Waiting for service at {url}...")
    while clock() < deadline:
        if cancel_event.is_set():
            return Readiness.CANCELLED
        try:
            remaining = max(deadline - clock(), 0.001)
            response = session.get(url, timeout=min(request_timeout, remaining))
            if 200 <= response.status_code < 300:
                log.info(f"Service ready after {(clock() - start_time) * 1000:.0f}ms")
                return Readiness.READY
            log.debug(f"Readiness probe answered {response.status_code}. Retrying.")
        except requests.RequestException as e:
            log.debug(f"Readiness probe failed: {e}. Retrying.")

        delay = min(next(delays), max(deadline - clock(), 0))
        if cancel_event.wait(delay):
            return Readiness.CANCELLED

    log.error(f"Service did not become ready within {timeout * 1000:.0f}ms.")
    return Readiness.TIMEOUT
