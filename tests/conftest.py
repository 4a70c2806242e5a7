from __future__ import annotations

import pytest
import pytest_asyncio

from optionrelay.execution.relay import OrderRelay
from optionrelay.persistence.order_store import InMemoryOrderStore
from optionrelay.trading.wallet import LocalKeyWallet
from tests.support import LOP, MAKER_KEY, NFT, OTHER_KEY, Clock, make_builder, option_params, order_params, relay_config


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def config():
    return relay_config()


@pytest.fixture
def maker_wallet() -> LocalKeyWallet:
    return LocalKeyWallet(MAKER_KEY)


@pytest.fixture
def other_wallet() -> LocalKeyWallet:
    return LocalKeyWallet(OTHER_KEY)


@pytest.fixture
def store() -> InMemoryOrderStore:
    return InMemoryOrderStore()


@pytest.fixture
def builder(clock, config):
    return make_builder(clock=clock, config=config)


@pytest.fixture
def relay(store, config, clock) -> OrderRelay:
    return OrderRelay(store=store, config=config, now_fn=clock)


@pytest_asyncio.fixture
async def bundle(builder, maker_wallet):
    return await builder.build(maker_wallet, order_params(), option_params(), LOP, NFT)
