from unittest.mock import MagicMock

import pytest

from stable_channels.config import Config
from stable_channels.lightning_node import ChannelSnapshot


@pytest.fixture
def plugin():
    return MagicMock()


@pytest.fixture
def config(tmp_path):
    return Config(
        sc_dir=str(tmp_path),
        expected_usd=100.0,
        is_stable_receiver=True,
        counterparty="02" + "ab" * 32,
        wait_recheck_seconds=0,
    )


def make_snapshot(our_sats: int, value_sats: int = 1_000_000, reserve_sats: int = 0,
                  channel_id: str = "aa" * 32, counterparty_id: str = "02" + "ab" * 32) -> ChannelSnapshot:
    return ChannelSnapshot(
        channel_id=channel_id,
        value_sats=value_sats,
        outbound_capacity_msat=(our_sats - reserve_sats) * 1000,
        unspendable_reserve_sats=reserve_sats,
        counterparty_id=counterparty_id,
        short_channel_id="800000x1x0",
    )
