"""
Stability Controller module for stable-channels

Peg-maintenance control loop

The stable receiver wants the USD value of its side of the channel to
stay at expected_usd. The stable provider absorbs the price risk. Every
cycle the controller:

1. Fetches the median BTC/USD price (skips the cycle if none is available)
2. Re-reads the channel balances from lightningd
3. Splits capacity into receiver/provider sides and values them in USD
4. Classifies the deviation from the peg into one Action
5. Pays the difference to the counterparty when it is our turn to pay

Decision table (checked in priority order):
    risk_level > risk_threshold                 -> HIGH_RISK (log only)
    percent_from_par < min_percent_from_par     -> DO_NOTHING
    receiver, receiver below peg                -> WAIT (provider pays us)
    receiver, receiver above peg                -> PAY
    provider, receiver below peg                -> PAY
    provider, receiver above peg                -> WAIT (receiver pays us)

The decision itself is the pure function evaluate(); the controller
wraps it with the price fetch, the payment and persistence.

Risk policy:
    Each failed stability payment raises risk_level by
    risk_failure_increment; a successful payment resets it to 0. Once
    above risk_threshold, payments stop until an operator clears it.
"""

import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, TYPE_CHECKING

from pyln.client import Plugin

from .amounts import Bitcoin, USD
from .config import Config
from .lightning_node import ChannelSnapshot, LightningNode
from .price_feeds import PRICE_UNAVAILABLE, PriceFeedAggregator

if TYPE_CHECKING:
    from .database import Database


class Action(Enum):
    """Outcome of one stability check."""
    DO_NOTHING = "do_nothing"
    WAIT = "wait"
    PAY = "pay"
    HIGH_RISK = "high_risk"


# (is_stable_receiver, receiver_below_peg) -> Action
ROLE_ACTIONS: Dict[Tuple[bool, bool], Action] = {
    (True, True): Action.WAIT,     # We are the receiver and below peg, provider pays
    (True, False): Action.PAY,     # We are the receiver and above peg, we pay
    (False, True): Action.PAY,     # We are the provider and receiver is below peg, we pay
    (False, False): Action.WAIT,   # We are the provider and receiver is above peg, receiver pays
}


@dataclass(frozen=True)
class StableChannel:
    """
    Peg state of one stable channel.

    Attributes:
        channel_id: Full channel ID being stabilized
        is_stable_receiver: Our role in the channel
        counterparty: Node ID of the other party
        expected_usd: Peg target for the receiver side
        expected_btc: Peg target expressed in BTC at latest_price
        stable_receiver_btc / stable_receiver_usd: Receiver side balance
        stable_provider_btc / stable_provider_usd: Provider side balance
        risk_level: Escalation counter; above the threshold payments stop
        timestamp: Unix time of the last evaluation
        latest_price: Median BTC/USD price used in the last evaluation
        percent_from_par: Absolute deviation from the peg in percent
        last_action: Classification of the last evaluation
        balances_stale: True if the channel was missing from the last listing
        balances_known: True once balances were read from the node or restored
        payment_made: True if the last evaluation sent a payment
        active: False once the channel has closed
    """
    channel_id: str
    is_stable_receiver: bool
    counterparty: str
    expected_usd: USD
    expected_btc: Bitcoin = Bitcoin()
    stable_receiver_btc: Bitcoin = Bitcoin()
    stable_provider_btc: Bitcoin = Bitcoin()
    stable_receiver_usd: USD = USD()
    stable_provider_usd: USD = USD()
    risk_level: int = 0
    timestamp: int = 0
    latest_price: float = 0.0
    percent_from_par: float = 0.0
    last_action: Optional[Action] = None
    balances_stale: bool = False
    balances_known: bool = False
    payment_made: bool = False
    active: bool = True
    short_channel_id: Optional[str] = None

    @property
    def dollars_from_par(self) -> USD:
        return self.stable_receiver_usd - self.expected_usd

    def matches(self, channel_id: Optional[str]) -> bool:
        return bool(channel_id) and channel_id in (self.channel_id, self.short_channel_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "short_channel_id": self.short_channel_id,
            "is_stable_receiver": self.is_stable_receiver,
            "counterparty": self.counterparty,
            "expected_usd": round(self.expected_usd),
            "expected_btc": str(self.expected_btc),
            "stable_receiver_btc": str(self.stable_receiver_btc),
            "stable_receiver_usd": round(self.stable_receiver_usd),
            "stable_provider_btc": str(self.stable_provider_btc),
            "stable_provider_usd": round(self.stable_provider_usd),
            "risk_level": self.risk_level,
            "timestamp": self.timestamp,
            "latest_price": round(self.latest_price, 2),
            "percent_from_par": round(self.percent_from_par, 4),
            "last_action": self.last_action.value if self.last_action else None,
            "balances_stale": self.balances_stale,
            "balances_known": self.balances_known,
            "payment_made": self.payment_made,
            "active": self.active
        }


@dataclass(frozen=True)
class PaymentOrder:
    """Instruction to pay the counterparty back towards the peg."""
    channel_id: str
    counterparty_id: str
    amount_msat: int
    usd_amount: USD


def with_balances(state: StableChannel, receiver_btc: Bitcoin,
                  provider_btc: Bitcoin) -> StableChannel:
    """Set both sides and value them at state.latest_price."""
    return replace(
        state,
        stable_receiver_btc=receiver_btc,
        stable_receiver_usd=USD.from_bitcoin(receiver_btc, state.latest_price),
        stable_provider_btc=provider_btc,
        stable_provider_usd=USD.from_bitcoin(provider_btc, state.latest_price),
    )


def update_balances(state: StableChannel, snapshot: ChannelSnapshot) -> StableChannel:
    """
    Recompute both sides from a live channel snapshot.

    Our side is outbound capacity plus our unspendable reserve; the
    counterparty holds the rest of the capacity.
    """
    our_balance_sats, their_balance_sats = snapshot.split_balances()

    if state.is_stable_receiver:
        receiver_sats, provider_sats = our_balance_sats, their_balance_sats
    else:
        receiver_sats, provider_sats = their_balance_sats, our_balance_sats

    state = with_balances(state, Bitcoin.from_sats(receiver_sats), Bitcoin.from_sats(provider_sats))
    return replace(state, balances_stale=False, balances_known=True)


def percent_from_par(state: StableChannel) -> float:
    return abs(state.dollars_from_par / state.expected_usd) * 100.0


def classify(state: StableChannel, percent: float,
             min_percent_from_par: float = 0.1,
             risk_threshold: int = 100) -> Action:
    """Map a priced state to exactly one Action."""
    if state.risk_level > risk_threshold:
        return Action.HIGH_RISK
    if percent < min_percent_from_par:
        return Action.DO_NOTHING
    receiver_below_peg = state.stable_receiver_usd < state.expected_usd
    return ROLE_ACTIONS[(state.is_stable_receiver, receiver_below_peg)]


def evaluate(state: StableChannel, snapshot: Optional[ChannelSnapshot], price: float,
             min_percent_from_par: float = 0.1, risk_threshold: int = 100,
             now: Optional[int] = None) -> Tuple[StableChannel, Optional[PaymentOrder]]:
    """
    Run one reconciliation step without side effects.

    Args:
        state: Current peg state (not modified)
        snapshot: Live channel snapshot, or None if the channel was not found
        price: BTC/USD price for this cycle (must be positive)
        min_percent_from_par: Deviation below which nothing happens
        risk_threshold: risk_level above which payments are blocked
        now: Evaluation timestamp (defaults to the current time)

    Returns:
        (new_state, payment_order) where payment_order is set only for PAY.
        new_state.last_action is None when no balances have ever been read.

    Stale balances never produce a payment: a PAY decision on them is
    downgraded to WAIT.
    """
    if price <= 0:
        raise ValueError(f"Cannot evaluate stability at non-positive price {price}")

    state = replace(
        state,
        latest_price=price,
        expected_btc=Bitcoin.from_usd(state.expected_usd, price),
        timestamp=int(time.time()) if now is None else now,
        payment_made=False,
    )

    if snapshot is not None:
        state = update_balances(state, snapshot)
    elif not state.balances_known:
        # Nothing observed yet, so there is nothing to classify
        return replace(state, balances_stale=True, percent_from_par=0.0, last_action=None), None
    else:
        # Keep the last known sats, revalue them, and flag them stale
        state = with_balances(state, state.stable_receiver_btc, state.stable_provider_btc)
        state = replace(state, balances_stale=True)

    percent = percent_from_par(state)
    action = classify(state, percent, min_percent_from_par, risk_threshold)
    if action == Action.PAY and state.balances_stale:
        action = Action.WAIT
    state = replace(state, percent_from_par=percent, last_action=action)

    order = None
    if action == Action.PAY:
        usd_amount = abs(state.dollars_from_par)
        amount_msat = USD.to_msats(usd_amount, price)
        if amount_msat > 0:
            order = PaymentOrder(
                channel_id=state.channel_id,
                counterparty_id=state.counterparty,
                amount_msat=amount_msat,
                usd_amount=usd_amount,
            )
    return state, order


class StabilityController:
    """
    Owns the peg state and runs the reconciliation cycle.

    Cycles are serialized: a check requested while another is running
    (timer, channel event, RPC, wait re-check) is skipped rather than
    queued, so overlapping invocations can never pay twice.
    """

    def __init__(self, plugin: Plugin, config: Config, node: LightningNode,
                 price_feeds: PriceFeedAggregator, database: Optional["Database"] = None):
        """
        Initialize the controller.

        Args:
            plugin: Reference to the pyln Plugin
            config: Configuration object
            node: Channel-state and payment collaborator
            price_feeds: Price aggregator
            database: Optional state store
        """
        self.plugin = plugin
        self.config = config
        self.node = node
        self.price_feeds = price_feeds
        self.database = database

        self._state: Optional[StableChannel] = None
        self._cycle_lock = threading.Lock()
        self._state_lock = threading.RLock()
        self._recheck_timer: Optional[threading.Timer] = None

    @property
    def state(self) -> Optional[StableChannel]:
        with self._state_lock:
            return self._state

    # =========================================================================
    # Channel lifecycle
    # =========================================================================

    def initialize(self) -> Optional[StableChannel]:
        """
        Adopt a channel that already exists when the plugin starts.

        Preference: the configured channel, then the first channel with
        the configured counterparty, then the first normal channel.
        """
        channels = self.node.list_channels()
        if not channels:
            self.plugin.log("No open channels yet; waiting for a channel to become ready")
            return None

        if self.config.channel_id:
            chosen = next((c for c in channels
                           if self.config.channel_id in (c.channel_id, c.short_channel_id)), None)
            if chosen is None:
                self.plugin.log(f"Configured channel {self.config.channel_id} not found", level='warn')
                return None
        elif self.config.counterparty_id:
            chosen = next((c for c in channels
                           if c.counterparty_id == self.config.counterparty_id), None)
            if chosen is None:
                self.plugin.log(
                    f"No channel with configured counterparty {self.config.counterparty_id[:16]}... yet"
                )
                return None
        else:
            chosen = channels[0]

        return self.adopt_channel(chosen.channel_id, chosen.counterparty_id, chosen.short_channel_id)

    def adopt_channel(self, channel_id: str, peer_id: str,
                      short_channel_id: Optional[str] = None) -> Optional[StableChannel]:
        """
        Create the peg state for a channel, restoring persisted risk and balances.

        Payments always go to the channel's own peer. A channel whose peer
        is not the configured counterparty is refused.

        Returns:
            The new peg state, or None if the channel was refused
        """
        if not peer_id:
            self.plugin.log(f"Not stabilizing channel {channel_id}: peer unknown", level='warn')
            return None
        if self.config.counterparty_id and peer_id != self.config.counterparty_id:
            self.plugin.log(
                f"Not stabilizing channel {channel_id}: peer {peer_id[:16]}... "
                f"is not the configured counterparty",
                level='warn'
            )
            return None

        state = StableChannel(
            channel_id=channel_id,
            short_channel_id=short_channel_id,
            is_stable_receiver=self.config.is_stable_receiver,
            counterparty=peer_id,
            expected_usd=USD.from_f64(self.config.expected_usd),
        )

        if self.database:
            saved = self.database.get_stable_channel(channel_id)
            if saved and saved.get("active"):
                state = replace(
                    state,
                    risk_level=saved.get("risk_level", 0),
                    stable_receiver_btc=Bitcoin.from_sats(saved.get("stable_receiver_sats", 0)),
                    stable_provider_btc=Bitcoin.from_sats(saved.get("stable_provider_sats", 0)),
                    balances_known=bool(saved.get("balances_known", 0)),
                )
                self.plugin.log(f"Restored stable channel {channel_id} (risk_level={state.risk_level})")

        with self._state_lock:
            self._cancel_recheck()
            self._state = state
        self._persist(state)

        role = "stable receiver" if state.is_stable_receiver else "stable provider"
        self.plugin.log(
            f"Stable channel {channel_id} active as {role}, "
            f"peg {state.expected_usd}, counterparty {state.counterparty[:16]}..."
        )
        return state

    def on_channel_ready(self, channel_id: str, peer_id: str,
                         short_channel_id: Optional[str] = None) -> Optional[StableChannel]:
        """
        Handle a channel reaching CHANNELD_NORMAL.

        Creates the peg state if we are not already stabilizing another
        channel, then triggers an immediate check.
        """
        current = self.state
        if current and current.active and not current.matches(channel_id):
            self.plugin.log(
                f"Ignoring channel {channel_id}: already stabilizing {current.channel_id}",
                level='debug'
            )
            return None

        if self.config.channel_id and self.config.channel_id not in (channel_id, short_channel_id):
            self.plugin.log(f"Ignoring channel {channel_id}: not the configured channel", level='debug')
            return None

        if current is None or not current.active or not current.matches(channel_id):
            if not peer_id:
                snapshot = self.node.get_channel(channel_id)
                peer_id = snapshot.counterparty_id if snapshot else ""
            current = self.adopt_channel(channel_id, peer_id, short_channel_id)
            if current is None:
                return None
        elif short_channel_id and not current.short_channel_id:
            with self._state_lock:
                current = replace(current, short_channel_id=short_channel_id)
                self._state = current

        self.trigger_check()
        return current

    def on_channel_closed(self, channel_id: str) -> bool:
        """
        Stop evaluating a channel that is closing or closed.

        Returns:
            True if the stabilized channel was deactivated
        """
        with self._state_lock:
            current = self._state
            if current is None or not current.active or not current.matches(channel_id):
                return False
            self._cancel_recheck()
            self._state = replace(current, active=False)

        if self.database:
            self.database.deactivate_stable_channel(current.channel_id)
        self.plugin.log(f"Stable channel {current.channel_id} closed; no longer evaluated")
        return True

    # =========================================================================
    # Risk counter
    # =========================================================================

    def set_risk_level(self, level: int) -> Optional[StableChannel]:
        """Override the risk counter (operator action)."""
        if level < 0:
            raise ValueError(f"risk level must not be negative, got {level}")
        with self._state_lock:
            if self._state is None:
                return None
            self._state = replace(self._state, risk_level=level)
            state = self._state
        self._persist(state)
        self.plugin.log(f"Risk level set to {level} for {state.channel_id}")
        return state

    def reset_risk_level(self) -> Optional[StableChannel]:
        return self.set_risk_level(0)

    # =========================================================================
    # Reconciliation cycle
    # =========================================================================

    def trigger_check(self) -> None:
        """Run a stability check on a background thread."""
        threading.Thread(target=self.check_stability, daemon=True, name="stability-check").start()

    def check_stability(self) -> Optional[StableChannel]:
        """
        Run one reconciliation cycle.

        Returns:
            The new peg state, or None if the cycle was skipped
        """
        if not self._cycle_lock.acquire(blocking=False):
            self.plugin.log("Stability check already in progress, skipping", level='debug')
            return None
        try:
            return self._run_cycle()
        finally:
            self._cycle_lock.release()

    def _run_cycle(self) -> Optional[StableChannel]:
        start = self.state
        if start is None or not start.active:
            self.plugin.log("No active stable channel to check", level='debug')
            return None

        price = self.price_feeds.get_latest_price()
        if price <= PRICE_UNAVAILABLE:
            self.plugin.log("No BTC/USD price available; skipping stability check", level='warn')
            return None

        snapshot = self._find_channel(start.channel_id)
        if snapshot is None:
            self.plugin.log(
                f"Channel {start.channel_id} not found in channel list; balances are stale",
                level='warn'
            )

        state, order = evaluate(
            start, snapshot, price,
            min_percent_from_par=self.config.min_percent_from_par,
            risk_threshold=self.config.risk_threshold
        )
        if state.last_action is None:
            self.plugin.log(
                f"No balances observed yet for {start.channel_id}; skipping decision",
                level='warn'
            )
            return self._commit(start, state)
        self._log_state(state)

        handlers = {
            Action.DO_NOTHING: self._do_nothing,
            Action.WAIT: self._wait,
            Action.PAY: self._pay,
            Action.HIGH_RISK: self._high_risk,
        }
        state = handlers[state.last_action](state, order)
        return self._commit(start, state)

    def _do_nothing(self, state: StableChannel, order: Optional[PaymentOrder]) -> StableChannel:
        self.plugin.log(
            f"Difference from par less than {self.config.min_percent_from_par}%. Doing nothing.",
            level='debug'
        )
        return state

    def _high_risk(self, state: StableChannel, order: Optional[PaymentOrder]) -> StableChannel:
        self.plugin.log(
            f"Risk level high ({state.risk_level} > {self.config.risk_threshold}); "
            f"no payment will be made",
            level='warn'
        )
        return state

    def _wait(self, state: StableChannel, order: Optional[PaymentOrder]) -> StableChannel:
        if state.balances_stale:
            self.plugin.log("Balances are stale; waiting for a fresh channel listing", level='warn')
        else:
            self.plugin.log(
                f"Counterparty owes {abs(state.dollars_from_par)}; waiting for their payment"
            )
        if self.config.wait_recheck_seconds > 0:
            self._schedule_recheck(self.config.wait_recheck_seconds)
            return state
        return self._recheck(state)

    def _pay(self, state: StableChannel, order: Optional[PaymentOrder]) -> StableChannel:
        if order is None:
            self.plugin.log("Deviation rounds to 0 msat; nothing to pay", level='debug')
            return state

        if self.config.dry_run:
            self.plugin.log(
                f"[DRY RUN] Would pay {order.amount_msat} msat ({order.usd_amount}) "
                f"to {order.counterparty_id[:16]}..."
            )
            self._record_payment(order, 'dry_run')
            return state

        self.plugin.log(
            f"Paying the difference: {order.amount_msat} msat ({order.usd_amount}) "
            f"to {order.counterparty_id[:16]}..."
        )
        result = self.node.send_payment(order.amount_msat, order.counterparty_id)

        if result.success:
            self.plugin.log(f"Payment sent successfully with payment ID: {result.payment_id}")
            self._record_payment(order, 'success', payment_id=result.payment_id)
            return replace(state, payment_made=True, risk_level=0)

        risk_level = state.risk_level + self.config.risk_failure_increment
        self.plugin.log(
            f"Failed to send payment: {result.error} (risk_level now {risk_level})",
            level='warn'
        )
        self._record_payment(order, 'failed', payment_id=result.payment_id, error_message=result.error)
        return replace(state, risk_level=risk_level)

    # =========================================================================
    # Wait-branch re-check
    # =========================================================================

    def _schedule_recheck(self, delay: float) -> None:
        with self._state_lock:
            self._cancel_recheck()
            timer = threading.Timer(delay, self.recheck_balances)
            timer.daemon = True
            timer.name = "stability-recheck"
            self._recheck_timer = timer
        timer.start()

    def _cancel_recheck(self) -> None:
        if self._recheck_timer is not None:
            self._recheck_timer.cancel()
            self._recheck_timer = None

    def recheck_balances(self) -> Optional[StableChannel]:
        """
        Re-read the balances after a WAIT to see if the counterparty paid.

        Observability only: reuses the cycle's price and never pays.
        """
        if not self._cycle_lock.acquire(blocking=False):
            self.plugin.log("Stability check in progress, skipping balance re-check", level='debug')
            return None
        try:
            start = self.state
            if start is None or not start.active:
                return None
            return self._commit(start, self._recheck(start))
        finally:
            self._cycle_lock.release()

    def _recheck(self, state: StableChannel) -> StableChannel:
        snapshot = self._find_channel(state.channel_id)
        if snapshot is None:
            self.plugin.log(f"Channel {state.channel_id} not found on re-check", level='warn')
            return replace(state, balances_stale=True)

        state = update_balances(state, snapshot)
        state = replace(state, percent_from_par=percent_from_par(state))
        self._log_state(state, prefix="Re-check")
        return state

    # =========================================================================
    # Helpers
    # =========================================================================

    def _find_channel(self, channel_id: str) -> Optional[ChannelSnapshot]:
        for snapshot in self.node.list_channels():
            if snapshot.channel_id == channel_id:
                return snapshot
        return None

    def _commit(self, start: StableChannel, state: StableChannel) -> StableChannel:
        """
        Store the cycle result.

        If the state was replaced while the cycle ran (operator RPC or a
        channel event) and still describes the same active channel, the
        cycle's observations are kept on top of it: a failure increment is
        added to the newer risk level, and a success reset only applies if
        the risk level was not changed meanwhile. Otherwise the newer state
        wins outright.
        """
        with self._state_lock:
            current = self._state
            if current is not start:
                if current is None or not current.active or current.channel_id != start.channel_id:
                    self.plugin.log(
                        "Peg state changed during the stability check; keeping the newer state",
                        level='debug'
                    )
                    return current

                if state.risk_level > start.risk_level:
                    risk_level = current.risk_level + (state.risk_level - start.risk_level)
                elif current.risk_level != start.risk_level:
                    risk_level = current.risk_level
                else:
                    risk_level = state.risk_level
                state = replace(
                    state,
                    risk_level=risk_level,
                    short_channel_id=current.short_channel_id or state.short_channel_id,
                )
            self._state = state
        self._persist(state)
        return state

    def _persist(self, state: StableChannel) -> None:
        if not self.database:
            return
        try:
            self.database.save_stable_channel(state)
        except Exception as e:
            self.plugin.log(f"Error saving stable channel state: {e}", level='error')

    def _record_payment(self, order: PaymentOrder, status: str,
                        payment_id: Optional[str] = None,
                        error_message: Optional[str] = None) -> None:
        if not self.database:
            return
        try:
            self.database.record_payment(
                order.channel_id, order.counterparty_id, order.amount_msat,
                order.usd_amount.amount, status,
                payment_id=payment_id, error_message=error_message
            )
        except Exception as e:
            self.plugin.log(f"Error recording stability payment: {e}", level='error')

    def _log_state(self, state: StableChannel, prefix: str = "Stability check") -> None:
        self.plugin.log(
            f"{prefix}: expected {state.expected_usd}, "
            f"receiver {state.stable_receiver_usd} ({state.stable_receiver_btc}), "
            f"provider {state.stable_provider_usd}, "
            f"{state.percent_from_par:.2f}% from par @ ${state.latest_price:,.2f}"
            + (" [stale balances]" if state.balances_stale else "")
        )

    def get_status(self) -> Dict[str, Any]:
        state = self.state
        status = {
            "stable_channel": state.to_dict() if state else None,
            "check_in_progress": self._cycle_lock.locked(),
        }
        if self.database and state:
            status["total_paid_msat"] = self.database.get_total_paid_msat(state.channel_id)
        return status

    def list_stable_channels(self) -> List[Dict[str, Any]]:
        """Every channel this node has stabilized, active first."""
        if not self.database:
            return []
        return self.database.get_all_stable_channels()

    def list_payments(self, limit: int = 10) -> List[Dict[str, Any]]:
        if not self.database:
            return []
        state = self.state
        return self.database.get_recent_payments(
            limit=limit, channel_id=state.channel_id if state else None
        )
