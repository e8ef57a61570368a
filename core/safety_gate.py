"""
vaultpilot Core: Safety Gate

Fleet-wide circuit breaker evaluated once per cycle before any user is
touched. Trips (fail closed) on:
- stale price data (last update older than the staleness window)
- settlement-asset depeg beyond the threshold
- feed errors or a feed read that exceeds the timeout
"""

import logging
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from core.config import SafetyPolicy
from infra.price_feed import PriceFeed, PriceReading

logger = logging.getLogger(__name__)

CHECK_STALENESS = "price_staleness"
CHECK_DEPEG = "depeg"
CHECK_FEED_ERROR = "price_feed_error"
CHECK_TIMEOUT = "price_feed_timeout"


@dataclass
class SafetyCheckResult:
    """Result of the fleet-wide safety check"""
    safe: bool
    reason: Optional[str] = None
    violated_check: Optional[str] = None
    price: Optional[float] = None
    updated_at: Optional[int] = None


class SafetyGate:
    """
    Usage:
        gate = SafetyGate(price_feed, config.safety)
        result = gate.check()
        if not result.safe:
            abort_cycle(result.reason)
    """

    def __init__(self,
                 price_feed: PriceFeed,
                 policy: SafetyPolicy,
                 clock: Callable[[], float] = time.time):
        self.price_feed = price_feed
        self.policy = policy
        self._clock = clock
        self._pending: Optional[Future] = None

    def _read_with_timeout(self) -> PriceReading:
        # At most one read in flight; a hung one is abandoned on a daemon
        # thread so it can neither block the next cycle nor process exit.
        if self._pending is not None and not self._pending.done():
            raise FutureTimeout("Previous price feed read still pending")

        future: Future = Future()

        def read() -> None:
            try:
                future.set_result(self.price_feed.latest())
            except Exception as e:
                future.set_exception(e)

        self._pending = future
        threading.Thread(target=read, name="safety-gate-read", daemon=True).start()
        return future.result(timeout=self.policy.timeout_seconds)

    def check(self) -> SafetyCheckResult:
        try:
            reading = self._read_with_timeout()
        except FutureTimeout as e:
            reason = str(e) or f"Price feed timed out after {self.policy.timeout_seconds:.1f}s"
            logger.error(f"SAFETY GATE TRIPPED: {reason}")
            return SafetyCheckResult(safe=False, reason=reason, violated_check=CHECK_TIMEOUT)
        except Exception as e:
            reason = f"Price feed error: {e}"
            logger.error(f"SAFETY GATE TRIPPED: {reason}")
            return SafetyCheckResult(safe=False, reason=reason, violated_check=CHECK_FEED_ERROR)

        age = self._clock() - reading.updated_at
        if age > self.policy.staleness_seconds:
            updated = datetime.fromtimestamp(reading.updated_at, tz=timezone.utc).isoformat()
            reason = f"Price data stale (last update: {updated}, {age:.0f}s ago)"
            logger.error(f"SAFETY GATE TRIPPED: {reason}")
            return SafetyCheckResult(
                safe=False,
                reason=reason,
                violated_check=CHECK_STALENESS,
                price=reading.price,
                updated_at=reading.updated_at,
            )

        deviation = (reading.price - self.policy.peg_price) / self.policy.peg_price
        if abs(deviation) > self.policy.depeg_threshold:
            reason = (
                f"Settlement asset depegged: ${reading.price:.4f} "
                f"({deviation * 100:+.2f}% deviation)"
            )
            logger.error(f"SAFETY GATE TRIPPED: {reason}")
            return SafetyCheckResult(
                safe=False,
                reason=reason,
                violated_check=CHECK_DEPEG,
                price=reading.price,
                updated_at=reading.updated_at,
            )

        logger.debug(f"Safety gate passed (price={reading.price:.4f}, age={age:.0f}s)")
        return SafetyCheckResult(safe=True, price=reading.price, updated_at=reading.updated_at)
