import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

import requests

logger = logging.getLogger(__name__)

Fetch = Callable[[str], Optional[Dict[str, Any]]]


def http_fetcher(base_url: str, session: Optional[requests.Session] = None,
                 timeout: float = 10) -> Fetch:
    http = session or requests.Session()

    def fetch(order_no: str) -> Optional[Dict[str, Any]]:
        resp = http.get(
            f"{base_url.rstrip('/')}/orders/wechat/status",
            params={"order_no": order_no},
            timeout=timeout,
        )
        body = resp.json()
        if not isinstance(body, dict) or body.get("code") != 0:
            return None
        return body.get("data")

    return fetch


class OrderStatusPoller:
    """
    Client-side wait for a QR-code payment.

    Polls the status endpoint every ``interval`` seconds and stops on the first
    ``paid`` answer, after ``timeout`` seconds, or when ``cancel()`` is called.
    The order stays queryable after a timeout; the poller just stops looking.
    """

    def __init__(self, fetch: Fetch, order_no: str, interval: float = 2.0,
                 timeout: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.fetch = fetch
        self.order_no = order_no
        self.interval = interval
        self.timeout = timeout
        self.clock = clock
        self._stopped = threading.Event()
        self.last_status: Optional[Dict[str, Any]] = None

    def cancel(self):
        self._stopped.set()

    @property
    def cancelled(self) -> bool:
        return self._stopped.is_set()

    def poll_once(self) -> bool:
        try:
            status = self.fetch(self.order_no)
        except (requests.RequestException, ValueError) as e:
            logger.warning("[Poller] Status check for %s failed: %s", self.order_no, e)
            return False
        if not isinstance(status, dict):
            return False
        self.last_status = status
        return bool(status.get("paid"))

    def wait(self) -> Optional[Dict[str, Any]]:
        """Blocks until paid (returns the status), or timeout/cancel (returns None)."""
        deadline = self.clock() + self.timeout
        while not self._stopped.is_set():
            if self.poll_once():
                return self.last_status
            remaining = deadline - self.clock()
            if remaining <= 0:
                logger.info("[Poller] Gave up on order %s after %ss", self.order_no, self.timeout)
                return None
            self._stopped.wait(min(self.interval, remaining))
        return None

    def start(self, on_paid: Optional[Callable[[Dict[str, Any]], None]] = None) -> threading.Thread:
        """Runs ``wait`` on a daemon thread; ``on_paid`` is called with the final status."""

        def run():
            status = self.wait()
            if status is not None and on_paid is not None:
                on_paid(status)

        thread = threading.Thread(target=run, name=f"poll-{self.order_no}", daemon=True)
        thread.start()
        return thread
