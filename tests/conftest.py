import itertools
from datetime import date

import pytest

from models import Bill, BillStatus
from reconciliation import SettlementEngine
from tests.fakes import MEMBER_EMAIL, InMemoryBillStore, InMemoryLedgerStore


@pytest.fixture
def bill():
    return Bill(
        id="B1",
        memberId="M1",
        memberEmail=MEMBER_EMAIL,
        amount=2500,
        status=BillStatus.PENDING,
        month="October",
        year=2026,
    )


@pytest.fixture
def bill_store(bill):
    return InMemoryBillStore([bill])


@pytest.fixture
def ledger_store():
    return InMemoryLedgerStore([MEMBER_EMAIL])


@pytest.fixture
def id_factory():
    counter = itertools.count(1)
    return lambda prefix: f"{prefix}{next(counter):04d}"


@pytest.fixture
def engine(bill_store, ledger_store, id_factory):
    return SettlementEngine(
        bill_store,
        ledger_store,
        id_factory=id_factory,
        today=lambda: date(2026, 10, 19),
        clock_ms=lambda: 1760000000000,
    )
