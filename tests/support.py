from __future__ import annotations

from datetime import datetime, timedelta, timezone

from tenacity import wait_none

from optionrelay.common.config import RelayConfig
from optionrelay.trading.builder import DualSignatureOrderBuilder, OptionParams, OrderParams

MAKER_KEY = "0x" + "11" * 32
OTHER_KEY = "0x" + "22" * 32

LOP = "0x" + "11" * 20
NFT = "0x" + "22" * 20
WETH = "0x" + "aa" * 20
USDC = "0x" + "bb" * 20

CHAIN_ID = 31337
NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)
EXPIRY = int((NOW + timedelta(days=7)).timestamp())


class Clock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


def relay_config(**overrides) -> RelayConfig:
    params = dict(chain_id=CHAIN_ID, lop_address=LOP, options_nft_address=NFT)
    params.update(overrides)
    return RelayConfig(**params)


def order_params(**overrides) -> OrderParams:
    params = dict(
        maker_asset=WETH,
        taker_asset=USDC,
        making_amount=10**18,
        taking_amount=2_000 * 10**6,
    )
    params.update(overrides)
    return OrderParams(**params)


def option_params(**overrides) -> OptionParams:
    params = dict(
        underlying_asset=WETH,
        strike_asset=USDC,
        strike_price=2_500 * 10**6,
        expiry=EXPIRY,
        amount=10**18,
    )
    params.update(overrides)
    return OptionParams(**params)


def make_builder(*, clock: Clock | None = None, **kwargs) -> DualSignatureOrderBuilder:
    return DualSignatureOrderBuilder(
        config=kwargs.pop("config", relay_config()),
        retry_wait=wait_none(),
        now_fn=clock or Clock(),
        **kwargs,
    )
