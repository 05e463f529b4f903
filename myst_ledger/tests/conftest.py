import random
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from myst_ledger.config import LedgerConfig
from myst_ledger.pricing import FixedPriceFeed
from myst_ledger.service import LedgerService

from .helpers import NOW


TON_PRICE = Decimal("5")


class FixedClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def price_feed():
    return FixedPriceFeed(TON_PRICE)


@pytest.fixture
def make_service(tmp_path, clock, price_feed):
    """Factory for services backed by a fresh SQLite file; kwargs override LedgerConfig fields."""
    created = []

    def _make(**overrides) -> LedgerService:
        db_path = tmp_path / f"ledger-{len(created)}.db"
        config = LedgerConfig(database_url=f"sqlite:///{db_path}", **overrides)
        service = LedgerService(config=config, price_feed=price_feed, clock=clock, rng=random.Random(7))
        created.append(service)
        return service

    yield _make
    for service in created:
        service.db.dispose()


@pytest.fixture
def service(make_service):
    return make_service()
