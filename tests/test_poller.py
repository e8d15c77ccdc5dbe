"""Tests for the status polling state machine."""

import httpx
import pytest
from unittest.mock import AsyncMock

from errors import BillNotFound, GatewayUnavailable, InvalidOrderFormat, NotAuthorized
from models import PaymentStatus, SettlementOutcome, SettlementReport
from poller import CancellationToken, PollState, Poller, StatusRelayClient, SystemClock
from reconciliation import check_and_settle
from tests.fakes import MEMBER_EMAIL, FakeClock

ORDER_ID = "BILL_B1_1700000000000_4821"
PENDING = {"status": "SUCCESS", "result": {"txnStatus": "PENDING"}}
SUCCESS = {"status": "SUCCESS", "result": {"txnStatus": "SUCCESS", "amount": "2500", "utr": "UTR123"}}


def _report(outcome, status=PaymentStatus.PENDING):
    return SettlementReport(outcome=outcome, billId="B1", orderId=ORDER_ID, paymentStatus=status)


def _direct_check(gateway, engine):
    async def check(order_id):
        _, report = await check_and_settle(gateway, engine, order_id)
        return report
    return check


class TestPoller:

    async def test_times_out_without_writes(self, engine, bill_store, ledger_store):
        gateway = AsyncMock()
        gateway.check_status.return_value = PENDING
        clock = FakeClock()
        states = []
        poller = Poller(ORDER_ID, _direct_check(gateway, engine), interval=5, timeout=300,
                        clock=clock, on_state_change=states.append)

        result = await poller.run()

        assert result.state == PollState.TIMED_OUT
        assert poller.state == PollState.TIMED_OUT
        assert clock.t == 300
        assert result.attempts == 59
        assert gateway.check_status.await_count == 59
        assert bill_store.writes == 0
        assert ledger_store.writes == 0
        assert states == [PollState.POLLING, PollState.TIMED_OUT]
        assert "try again" in result.message

    async def test_settles_when_payment_completes(self, engine, ledger_store):
        gateway = AsyncMock()
        gateway.check_status.side_effect = [PENDING, PENDING, SUCCESS]
        clock = FakeClock()
        poller = Poller(ORDER_ID, _direct_check(gateway, engine), interval=5, timeout=300, clock=clock)

        result = await poller.run()

        assert result.state == PollState.SETTLED
        assert result.attempts == 3
        assert clock.t == 15
        assert result.report.outcome == SettlementOutcome.SETTLED
        assert len(ledger_store.entries[MEMBER_EMAIL]) == 1

    async def test_bill_paid_by_webhook_ends_polling(self):
        check = AsyncMock(side_effect=[
            _report(SettlementOutcome.NOT_COMPLETED),
            _report(SettlementOutcome.NOOP, PaymentStatus.SUCCESS),
        ])
        poller = Poller(ORDER_ID, check, interval=5, timeout=300, clock=FakeClock())

        result = await poller.run()

        assert result.state == PollState.SETTLED
        assert result.attempts == 2

    async def test_late_webhook_after_timeout_still_settles(self, engine, bill_store, ledger_store):
        from gateway_client import normalize
        gateway = AsyncMock()
        gateway.check_status.return_value = PENDING
        poller = Poller(ORDER_ID, _direct_check(gateway, engine), interval=5, timeout=30, clock=FakeClock())

        assert (await poller.run()).state == PollState.TIMED_OUT

        report = await engine.settle(normalize({"orderId": ORDER_ID, "status": "SUCCESS", "amount": 2500}))

        assert report.outcome == SettlementOutcome.SETTLED
        assert poller.state == PollState.TIMED_OUT
        assert len(ledger_store.entries[MEMBER_EMAIL]) == 1

    async def test_cancel_stops_future_ticks(self):
        poller = None
        calls = 0

        async def check(order_id):
            nonlocal calls
            calls += 1
            if calls == 3:
                poller.cancel()
            return _report(SettlementOutcome.NOT_COMPLETED)

        clock = FakeClock()
        poller = Poller(ORDER_ID, check, interval=5, timeout=300, clock=clock)

        result = await poller.run()

        assert result.state == PollState.CANCELLED
        assert calls == 3
        assert clock.t == 15
        assert "retry" in result.message

    async def test_cancel_before_run(self):
        check = AsyncMock()
        token = CancellationToken()
        token.cancel()
        poller = Poller(ORDER_ID, check, clock=FakeClock(), token=token)

        result = await poller.run()

        assert result.state == PollState.CANCELLED
        check.assert_not_called()

    async def test_settlement_in_flight_when_cancelled_is_reported(self):
        poller = None

        async def check(order_id):
            poller.cancel()
            return _report(SettlementOutcome.SETTLED, PaymentStatus.SUCCESS)

        poller = Poller(ORDER_ID, check, interval=5, timeout=300, clock=FakeClock())

        result = await poller.run()

        assert result.state == PollState.SETTLED

    async def test_transient_errors_are_retried(self):
        check = AsyncMock(side_effect=[
            GatewayUnavailable("HTTP 503"),
            GatewayUnavailable("timeout"),
            _report(SettlementOutcome.SETTLED, PaymentStatus.SUCCESS),
        ])
        poller = Poller(ORDER_ID, check, interval=5, timeout=300, clock=FakeClock())

        result = await poller.run()

        assert result.state == PollState.SETTLED
        assert result.attempts == 3

    async def test_persistent_errors_end_in_timeout(self):
        check = AsyncMock(side_effect=GatewayUnavailable("down"))
        poller = Poller(ORDER_ID, check, interval=5, timeout=20, clock=FakeClock())

        result = await poller.run()

        assert result.state == PollState.TIMED_OUT
        assert result.lastError == "down"
        assert result.attempts == 3

    @pytest.mark.parametrize("error", [InvalidOrderFormat("junk"), BillNotFound("B1"), NotAuthorized("token expired")])
    async def test_unretryable_errors_fail_fast(self, error):
        check = AsyncMock(side_effect=error)
        poller = Poller(ORDER_ID, check, interval=5, timeout=300, clock=FakeClock())

        result = await poller.run()

        assert result.state == PollState.FAILED
        assert result.attempts == 1

    async def test_last_tick_is_clipped_to_deadline(self):
        check = AsyncMock(return_value=_report(SettlementOutcome.NOT_COMPLETED))
        clock = FakeClock()
        poller = Poller(ORDER_ID, check, interval=5, timeout=12, clock=clock)

        result = await poller.run()

        assert result.state == PollState.TIMED_OUT
        assert clock.sleeps == [5, 5, 2]
        assert result.attempts == 2

    async def test_runs_once(self):
        poller = Poller(ORDER_ID, AsyncMock(return_value=_report(SettlementOutcome.NOOP)), clock=FakeClock())
        await poller.run()

        with pytest.raises(RuntimeError):
            await poller.run()

    def test_rejects_non_positive_timings(self):
        with pytest.raises(ValueError):
            Poller(ORDER_ID, AsyncMock(), interval=0)


async def test_system_clock_sleep_wakes_on_cancel():
    clock = SystemClock()
    token = CancellationToken()
    token.cancel()
    started = clock.now()

    await clock.sleep(30, token)

    assert clock.now() - started < 1


class TestStatusRelayClient:

    def _client(self, handler):
        return StatusRelayClient("https://society.example.com/api/payments", access_token="jwt-1",
                                 transport=httpx.MockTransport(handler))

    async def test_returns_settlement_report(self):
        def handler(request: httpx.Request):
            assert request.url.path == "/api/payments/check-status"
            assert request.headers["authorization"] == "Bearer jwt-1"
            return httpx.Response(200, json={"success": True, "data": {
                "payment": {"orderId": ORDER_ID, "status": "SUCCESS"},
                "settlement": {"outcome": "settled", "billId": "B1", "orderId": ORDER_ID, "paymentStatus": "SUCCESS"},
            }})

        report = await self._client(handler).check(ORDER_ID)

        assert report.outcome == SettlementOutcome.SETTLED
        assert report.billPaid

    @pytest.mark.parametrize("status,error", [
        (400, InvalidOrderFormat),
        (404, BillNotFound),
        (401, NotAuthorized),
        (403, NotAuthorized),
        (502, GatewayUnavailable),
    ])
    async def test_maps_http_errors(self, status, error):
        client = self._client(lambda request: httpx.Response(status, json={"success": False}))

        with pytest.raises(error):
            await client.check(ORDER_ID)

    async def test_unreadable_body(self):
        client = self._client(lambda request: httpx.Response(200, json={"success": True}))

        with pytest.raises(GatewayUnavailable):
            await client.check(ORDER_ID)

    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(GatewayUnavailable):
            await self._client(handler).check(ORDER_ID)

    async def test_rejected_token_fails_polling_at_once(self):
        client = self._client(lambda request: httpx.Response(401, json={"success": False}))
        clock = FakeClock()
        poller = Poller(ORDER_ID, client.check, interval=5, timeout=300, clock=clock)

        result = await poller.run()

        assert result.state == PollState.FAILED
        assert result.attempts == 1
        assert clock.t == 5
