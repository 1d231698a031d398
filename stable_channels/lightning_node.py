"""
Lightning Node module for stable-channels

Thin adapter over the Core Lightning RPC. It gives the stability
controller the two capabilities it consumes:

- list_channels(): live channel balances as ChannelSnapshot records
- send_payment(): one spontaneous (keysend) payment to a peer

RPC failures are caught here and turned into empty results or failed
PaymentResult records, so the control loop never sees an RpcError.
"""

from dataclasses import dataclass
from typing import Any, List, Optional

from pyln.client import Plugin, RpcError


NORMAL_STATE = "CHANNELD_NORMAL"


def msat_to_int(value: Any) -> int:
    """Accept both integer msat values and legacy '1234msat' strings."""
    if value is None:
        return 0
    if isinstance(value, str):
        return int(value.replace("msat", ""))
    return int(value)


@dataclass(frozen=True)
class ChannelSnapshot:
    """
    Point-in-time view of one channel's balances.

    Attributes:
        channel_id: Full channel ID (hex)
        value_sats: Total channel capacity
        outbound_capacity_msat: What we can send right now
        unspendable_reserve_sats: Our channel reserve (ours, but not spendable)
        counterparty_id: Peer node ID
        short_channel_id: SCID, once the funding tx is confirmed
        state: lightningd channel state
    """
    channel_id: str
    value_sats: int
    outbound_capacity_msat: int
    unspendable_reserve_sats: int
    counterparty_id: str
    short_channel_id: Optional[str] = None
    state: str = NORMAL_STATE

    def split_balances(self):
        """
        Split the capacity into (our_sats, their_sats).

        our + their always equals value_sats.
        """
        our_balance_sats = self.outbound_capacity_msat // 1000 + self.unspendable_reserve_sats
        their_balance_sats = self.value_sats - our_balance_sats
        return our_balance_sats, their_balance_sats


@dataclass
class PaymentResult:
    """Outcome of a send_payment() call."""
    success: bool
    payment_id: Optional[str] = None
    error: Optional[str] = None


class LightningNode:
    """
    Channel-state and payment collaborator backed by lightningd.
    """

    def __init__(self, plugin: Plugin):
        """
        Args:
            plugin: Reference to the pyln Plugin (RPC and logging)
        """
        self.plugin = plugin
        self._node_id: Optional[str] = None

    def node_id(self) -> str:
        if self._node_id is None:
            try:
                info = self.plugin.rpc.getinfo()
                self._node_id = info.get("id", "")
            except RpcError as e:
                self.plugin.log(f"Error getting our node ID: {e}", level='error')
                return ""
        return self._node_id

    def list_channels(self) -> List[ChannelSnapshot]:
        """
        List channels in CHANNELD_NORMAL state.

        Returns:
            ChannelSnapshot per usable channel (empty on RPC error)
        """
        try:
            result = self.plugin.rpc.listpeerchannels()
        except RpcError as e:
            self.plugin.log(f"listpeerchannels failed: {e}", level='warn')
            return []

        snapshots = []
        for ch in result.get("channels", []):
            if ch.get("state") != NORMAL_STATE:
                continue
            channel_id = ch.get("channel_id")
            if not channel_id:
                continue

            snapshots.append(ChannelSnapshot(
                channel_id=channel_id,
                value_sats=msat_to_int(ch.get("total_msat")) // 1000,
                outbound_capacity_msat=msat_to_int(ch.get("spendable_msat")),
                unspendable_reserve_sats=msat_to_int(ch.get("our_reserve_msat")) // 1000,
                counterparty_id=ch.get("peer_id", ""),
                short_channel_id=ch.get("short_channel_id"),
                state=ch.get("state", NORMAL_STATE)
            ))
        return snapshots

    def get_channel(self, channel_id: str) -> Optional[ChannelSnapshot]:
        """Find a channel by full channel ID or short channel ID."""
        for snapshot in self.list_channels():
            if channel_id in (snapshot.channel_id, snapshot.short_channel_id):
                return snapshot
        return None

    def send_payment(self, amount_msat: int, counterparty_id: str) -> PaymentResult:
        """
        Send a keysend payment.

        Args:
            amount_msat: Amount to send in millisatoshis
            counterparty_id: Destination node ID

        Returns:
            PaymentResult carrying the payment hash or the error
        """
        try:
            response = self.plugin.rpc.keysend(destination=counterparty_id, amount_msat=amount_msat)
        except RpcError as e:
            return PaymentResult(success=False, error=str(e))

        status = response.get("status", "complete")
        if status != "complete":
            return PaymentResult(
                success=False,
                payment_id=response.get("payment_hash"),
                error=f"keysend returned status {status}"
            )
        return PaymentResult(success=True, payment_id=response.get("payment_hash"))
