"""Shared test fixtures for tradedesk tests.

Provides sample position rows, exchange payloads and a scriptable fake
gateway that can be reused across test modules.
"""

import pytest

from tradedesk.schemas.enums import PositionSide
from tradedesk.schemas.position import Position
from tradedesk.storage.position_store import InMemoryPositionStore

from tests.fixtures import bitget_responses
from tests.fixtures.sample_positions import FakeGateway, make_position


@pytest.fixture
def sample_position() -> Position:
    return make_position()


@pytest.fixture
def short_position() -> Position:
    return make_position(
        id="pos-2",
        symbol="ETHUSDT",
        side=PositionSide.SELL.value,
        entry_price=2000.0,
        quantity=0.1,
        leverage=20,
        sl_price=2100.0,
        tp1_price=1900.0,
        tp2_price=1800.0,
        tp3_price=None,
        sl_order_id=None,
        tp1_order_id=None,
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def store(sample_position: Position) -> InMemoryPositionStore:
    return InMemoryPositionStore([sample_position])


@pytest.fixture
def plan_orders_payload() -> dict:
    return bitget_responses.plan_orders_btc()
