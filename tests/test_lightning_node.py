import pytest
from pyln.client import RpcError

from stable_channels.lightning_node import ChannelSnapshot, LightningNode, msat_to_int


PEER = "02" + "cd" * 32


def _channel(**overrides):
    ch = {
        "peer_id": PEER,
        "channel_id": "bb" * 32,
        "short_channel_id": "800000x1x0",
        "state": "CHANNELD_NORMAL",
        "total_msat": 1_000_000_000,
        "spendable_msat": 180_000_000,
        "our_reserve_msat": 10_000_000,
    }
    ch.update(overrides)
    return ch


def test_msat_to_int_accepts_legacy_strings() -> None:
    assert msat_to_int("1234msat") == 1234
    assert msat_to_int(1234) == 1234
    assert msat_to_int(None) == 0


def test_list_channels_maps_fields(plugin) -> None:
    plugin.rpc.listpeerchannels.return_value = {"channels": [_channel()]}
    node = LightningNode(plugin)

    [snapshot] = node.list_channels()
    assert snapshot.channel_id == "bb" * 32
    assert snapshot.value_sats == 1_000_000
    assert snapshot.outbound_capacity_msat == 180_000_000
    assert snapshot.unspendable_reserve_sats == 10_000
    assert snapshot.counterparty_id == PEER
    assert snapshot.split_balances() == (190_000, 810_000)


def test_list_channels_skips_non_normal(plugin) -> None:
    plugin.rpc.listpeerchannels.return_value = {"channels": [
        _channel(state="CHANNELD_AWAITING_LOCKIN"),
        _channel(state="ONCHAIN", channel_id="cc" * 32),
        _channel(channel_id="dd" * 32, total_msat="2000000000msat"),
    ]}
    node = LightningNode(plugin)

    snapshots = node.list_channels()
    assert [s.channel_id for s in snapshots] == ["dd" * 32]
    assert snapshots[0].value_sats == 2_000_000


def test_list_channels_rpc_error_returns_empty(plugin) -> None:
    plugin.rpc.listpeerchannels.side_effect = RpcError("listpeerchannels", {}, {"message": "boom"})
    assert LightningNode(plugin).list_channels() == []


def test_get_channel_by_short_channel_id(plugin) -> None:
    plugin.rpc.listpeerchannels.return_value = {"channels": [_channel()]}
    node = LightningNode(plugin)
    assert node.get_channel("800000x1x0").channel_id == "bb" * 32
    assert node.get_channel("missing") is None


@pytest.mark.parametrize("value,outbound_msat,reserve", [
    (1_000_000, 0, 0),
    (1_000_000, 999_999_999, 0),
    (500_000, 123_456_789, 5_000),
    (16_777_215, 10_000_000_000, 167_772),
])
def test_balance_split_conserves_capacity(value, outbound_msat, reserve) -> None:
    snapshot = ChannelSnapshot("id", value, outbound_msat, reserve, PEER)
    ours, theirs = snapshot.split_balances()
    assert ours + theirs == value
    assert ours == outbound_msat // 1000 + reserve


def test_send_payment_success(plugin) -> None:
    plugin.rpc.keysend.return_value = {"payment_hash": "ff" * 32, "status": "complete"}
    result = LightningNode(plugin).send_payment(10_000_000, PEER)

    plugin.rpc.keysend.assert_called_once_with(destination=PEER, amount_msat=10_000_000)
    assert result.success
    assert result.payment_id == "ff" * 32


def test_send_payment_rpc_error(plugin) -> None:
    plugin.rpc.keysend.side_effect = RpcError("keysend", {}, {"message": "no route"})
    result = LightningNode(plugin).send_payment(10_000_000, PEER)

    assert not result.success
    assert result.error


def test_send_payment_pending_is_not_success(plugin) -> None:
    plugin.rpc.keysend.return_value = {"payment_hash": "ff" * 32, "status": "pending"}
    result = LightningNode(plugin).send_payment(10_000_000, PEER)
    assert not result.success
    assert "pending" in result.error


def test_node_id_is_cached(plugin) -> None:
    plugin.rpc.getinfo.return_value = {"id": PEER}
    node = LightningNode(plugin)

    assert node.node_id() == PEER
    assert node.node_id() == PEER
    plugin.rpc.getinfo.assert_called_once()
