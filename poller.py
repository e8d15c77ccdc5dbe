# poller.py
"""Client-side status polling for one payment attempt."""
import asyncio
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Awaitable, Callable, Optional

import httpx
import structlog
from pydantic import BaseModel

from config import POLL_INTERVAL_SECONDS, POLL_TIMEOUT_SECONDS
from errors import BillNotFound, GatewayUnavailable, InvalidOrderFormat, NotAuthorized, SettlementError
from models import SettlementReport
from orders import parse_bill_id

logger = structlog.get_logger(__name__)


class PollState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    SETTLED = "settled"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = {PollState.SETTLED, PollState.TIMED_OUT, PollState.CANCELLED, PollState.FAILED}

USER_MESSAGES = {
    PollState.SETTLED: "Payment received. Your bill has been marked as paid.",
    PollState.TIMED_OUT: (
        "We could not confirm your payment yet. If you completed it, it will be applied "
        "automatically; otherwise please try again."
    ),
    PollState.CANCELLED: "Payment check cancelled. You can retry the payment at any time.",
    PollState.FAILED: "This payment cannot be verified. Please contact the society office.",
}

# errors that will never go away by asking again
UNRETRYABLE = (InvalidOrderFormat, BillNotFound, NotAuthorized)


class CancellationToken:
    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self):
        await self._event.wait()


class Clock(ABC):

    @abstractmethod
    def now(self) -> float:
        pass

    @abstractmethod
    async def sleep(self, seconds: float, token: CancellationToken) -> None:
        """Sleep up to ``seconds``, returning early once ``token`` is cancelled."""
        pass


class SystemClock(Clock):
    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float, token: CancellationToken) -> None:
        try:
            await asyncio.wait_for(token.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass


class PollResult(BaseModel):
    orderId: str
    state: PollState
    attempts: int = 0
    elapsedSeconds: float = 0.0
    report: Optional[SettlementReport] = None
    lastError: Optional[str] = None
    message: str = ""


StatusCheck = Callable[[str], Awaitable[SettlementReport]]


class Poller:
    def __init__(
        self,
        order_id: str,
        check_status: StatusCheck,
        interval: float = POLL_INTERVAL_SECONDS,
        timeout: float = POLL_TIMEOUT_SECONDS,
        clock: Optional[Clock] = None,
        token: Optional[CancellationToken] = None,
        on_state_change: Optional[Callable[[PollState], None]] = None,
    ):
        if interval <= 0 or timeout <= 0:
            raise ValueError("interval and timeout must be positive")
        self.order_id = order_id
        self.check_status = check_status
        self.interval = interval
        self.timeout = timeout
        self.clock = clock or SystemClock()
        self.token = token or CancellationToken()
        self.on_state_change = on_state_change
        self._state = PollState.IDLE
        self._log = logger.bind(order_id=order_id)

    @property
    def state(self) -> PollState:
        return self._state

    def cancel(self):
        """Stop future ticks. An in-flight check is allowed to finish."""
        self.token.cancel()

    def _transition(self, state: PollState):
        self._state = state
        if self.on_state_change is not None:
            self.on_state_change(state)

    async def run(self) -> PollResult:
        if self._state != PollState.IDLE:
            raise RuntimeError(f"Poller for {self.order_id} already ran ({self._state.value})")

        started = self.clock.now()
        deadline = started + self.timeout
        attempts = 0
        last_error = None
        report = None
        self._transition(PollState.POLLING)
        self._log.info("polling_started", interval=self.interval, timeout=self.timeout)

        def finish(state: PollState) -> PollResult:
            self._transition(state)
            elapsed = self.clock.now() - started
            self._log.info("polling_finished", state=state.value, attempts=attempts, elapsed=elapsed)
            return PollResult(
                orderId=self.order_id,
                state=state,
                attempts=attempts,
                elapsedSeconds=elapsed,
                report=report,
                lastError=last_error,
                message=USER_MESSAGES[state],
            )

        while True:
            remaining = deadline - self.clock.now()
            if remaining > 0 and not self.token.cancelled:
                await self.clock.sleep(min(self.interval, remaining), self.token)
            if self.token.cancelled:
                return finish(PollState.CANCELLED)
            if self.clock.now() >= deadline:
                return finish(PollState.TIMED_OUT)

            attempts += 1
            try:
                report = await self.check_status(self.order_id)
            except UNRETRYABLE as e:
                last_error = str(e)
                self._log.error("poll_tick_unretryable", error=last_error, attempt=attempts)
                return finish(PollState.FAILED)
            except SettlementError as e:
                last_error = str(e)
                self._log.warning("poll_tick_failed", error=last_error, attempt=attempts)
                continue

            # settled by us, or already paid through the webhook
            if report.billPaid:
                return finish(PollState.SETTLED)


class StatusRelayClient:
    """Calls the server's /check-status relay on behalf of a poller."""

    def __init__(
        self,
        base_url: str,
        access_token: Optional[str] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Accept": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport, headers=headers)

    async def aclose(self):
        await self._client.aclose()

    async def check(self, order_id: str) -> SettlementReport:
        try:
            response = await self._client.post("/check-status", json={"orderId": order_id})
        except httpx.HTTPError as e:
            raise GatewayUnavailable(f"Status relay unreachable: {e}") from e

        if response.status_code == 400:
            raise InvalidOrderFormat(order_id)
        if response.status_code == 404:
            raise BillNotFound(parse_bill_id(order_id))
        if response.status_code in (401, 403):
            raise NotAuthorized("Status relay refused the access token", {"statusCode": response.status_code})
        if not response.is_success:
            raise GatewayUnavailable(
                f"Status relay returned HTTP {response.status_code}", {"statusCode": response.status_code}
            )
        try:
            body = response.json()
            return SettlementReport(**body["data"]["settlement"])
        except (ValueError, KeyError, TypeError) as e:
            raise GatewayUnavailable("Status relay sent an unreadable body") from e
