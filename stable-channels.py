#!/usr/bin/env python3
"""
stable-channels: A Stable Channels Plugin for Core Lightning

This plugin keeps the USD value of one side of a Lightning channel
pinned to a fixed target. The "stable receiver" wants its balance to
stay worth expected_usd; the "stable provider" takes the other side of
the BTC/USD float.

PEG-MAINTENANCE LOOP:
---------------------
Every check interval (30s by default) and right after a channel becomes
ready, the plugin:
1. Takes the median BTC/USD price from several exchange APIs
2. Reads the channel balance from lightningd (listpeerchannels)
3. Values both sides of the channel in USD
4. If the receiver is off the peg by 0.1% or more, whichever side owes
   the difference pays it with a keysend

Both peers run this plugin, one configured as receiver and one as
provider, so each side only ever pays when it is the one that owes.

Dependencies:
- pyln-client: Core Lightning plugin framework
- requests: Exchange price APIs

Author: Stable Channels Team
License: MIT
"""

import os
import signal
import threading
from typing import Dict, Optional, Any

from pyln.client import Plugin

# Import our modules
from stable_channels.config import Config
from stable_channels.database import Database
from stable_channels.lightning_node import LightningNode, NORMAL_STATE
from stable_channels.price_feeds import PriceFeedAggregator, calculate_median_price
from stable_channels.stability import StabilityController

# Initialize the plugin
plugin = Plugin()

# Global instances (initialized in init)
stability_controller: Optional[StabilityController] = None
price_feeds: Optional[PriceFeedAggregator] = None
database: Optional[Database] = None
config: Optional[Config] = None

shutdown_event = threading.Event()

# channel_state_changed states after which a channel is no longer stabilized
CLOSING_STATES = {
    "CHANNELD_SHUTTING_DOWN",
    "CLOSINGD_SIGEXCHANGE",
    "CLOSINGD_COMPLETE",
    "AWAITING_UNILATERAL",
    "FUNDING_SPEND_SEEN",
    "ONCHAIN",
    "CLOSED",
}


# =============================================================================
# PLUGIN OPTIONS
# =============================================================================

plugin.add_option(
    name='stable-channels-sc-dir',
    default='~/.lightning/stable-channels',
    description='Directory for the stable channel state database'
)

plugin.add_option(
    name='stable-channels-expected-usd',
    default='100',
    description='USD value the stable receiver balance is pegged to (default: 100)'
)

plugin.add_option(
    name='stable-channels-is-receiver',
    default='true',
    description='true if this node is the stable receiver, false for the stable provider (default: true)'
)

plugin.add_option(
    name='stable-channels-counterparty',
    default='',
    description='Node ID of the counterparty (default: peer of the stabilized channel)'
)

plugin.add_option(
    name='stable-channels-channel-id',
    default='',
    description='Channel ID or short channel ID to stabilize (default: first normal channel)'
)

plugin.add_option(
    name='stable-channels-check-interval',
    default='30',
    description='Interval in seconds between stability checks (default: 30)'
)

plugin.add_option(
    name='stable-channels-wait-recheck',
    default='10',
    description='Seconds to wait before re-reading balances while waiting on the counterparty (default: 10)'
)

plugin.add_option(
    name='stable-channels-price-timeout',
    default='5',
    description='Per-request timeout in seconds for price feeds (default: 5)'
)

plugin.add_option(
    name='stable-channels-min-percent-from-par',
    default='0.1',
    description='Deviation from the peg, in percent, below which nothing is paid (default: 0.1)'
)

plugin.add_option(
    name='stable-channels-risk-threshold',
    default='100',
    description='Risk level above which automatic payments stop (default: 100)'
)

plugin.add_option(
    name='stable-channels-risk-failure-increment',
    default='25',
    description='Risk level added for each failed stability payment (default: 25)'
)

plugin.add_option(
    name='stable-channels-dry-run',
    default='false',
    description='If true, log payments but do not send them (default: false)'
)


# =============================================================================
# INITIALIZATION
# =============================================================================

@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs):
    """
    Initialize the Stable Channels plugin.

    This is called once when the plugin starts. We:
    1. Parse and validate options
    2. Initialize the database
    3. Create the price aggregator, node adapter and controller
    4. Adopt an existing channel, if any
    5. Start the stability check loop
    """
    global stability_controller, price_feeds, database, config

    plugin.log("Initializing stable-channels plugin...")

    # Build configuration from options
    config = Config(
        sc_dir=os.path.expanduser(options['stable-channels-sc-dir']),
        expected_usd=float(options['stable-channels-expected-usd']),
        is_stable_receiver=options['stable-channels-is-receiver'].lower() == 'true',
        counterparty=options['stable-channels-counterparty'],
        channel_id=options['stable-channels-channel-id'],
        check_interval=int(options['stable-channels-check-interval']),
        wait_recheck_seconds=int(options['stable-channels-wait-recheck']),
        price_timeout=float(options['stable-channels-price-timeout']),
        min_percent_from_par=float(options['stable-channels-min-percent-from-par']),
        risk_threshold=int(options['stable-channels-risk-threshold']),
        risk_failure_increment=int(options['stable-channels-risk-failure-increment']),
        dry_run=options['stable-channels-dry-run'].lower() == 'true'
    )
    config.validate()

    plugin.log(f"Configuration loaded: expected_usd={config.expected_usd}, "
               f"role={'receiver' if config.is_stable_receiver else 'provider'}, "
               f"interval={config.check_interval}s, dry_run={config.dry_run}")

    # Initialize database
    database = Database(config.db_path, plugin)
    database.initialize()

    price_feeds = PriceFeedAggregator(plugin, timeout=config.price_timeout)
    node = LightningNode(plugin)
    stability_controller = StabilityController(plugin, config, node, price_feeds, database)

    # Pick up a channel that is already open
    stability_controller.initialize()

    # Note: plugin.log() is safe to call from threads in pyln-client
    # We use daemon threads so they don't block shutdown

    def stability_check_loop():
        """Background loop for stability checks."""
        # Initial delay to let lightningd fully start (interruptible)
        if shutdown_event.wait(5):
            return

        while not shutdown_event.is_set():
            try:
                run_stability_check()
                database.cleanup_old_data(days_to_keep=config.history_days)
            except Exception as e:
                plugin.log(f"Error in stability check: {e}", level='error')

            # Interruptible sleep: wait for timeout OR shutdown signal
            if shutdown_event.wait(config.check_interval):
                plugin.log("Stability check loop stopping due to shutdown signal")
                break

    def handle_shutdown_signal(signum, frame):
        """
        Handle SIGTERM for graceful shutdown.

        CLN sends SIGTERM when `lightning-cli plugin stop stable-channels.py`
        is called. The loop exits instead of waiting out its sleep.
        """
        plugin.log("Received SIGTERM, initiating clean shutdown...")
        shutdown_event.set()
        if database:
            try:
                database.close()
            except Exception as e:
                plugin.log(f"Error closing database: {e}", level='warn')

    signal.signal(signal.SIGTERM, handle_shutdown_signal)

    threading.Thread(target=stability_check_loop, daemon=True, name="stability-check-loop").start()

    plugin.log("stable-channels plugin initialized successfully!")
    return None


# =============================================================================
# CORE LOGIC FUNCTIONS
# =============================================================================

def run_stability_check():
    """
    Run one peg-maintenance cycle.

    Skipped (not queued) if a cycle is already running.
    """
    if stability_controller is None:
        plugin.log("Stability controller not initialized", level='error')
        return None

    state = stability_controller.check_stability()
    if state is not None and state.last_action is not None:
        plugin.log(f"Stability check complete: {state.last_action.value}", level='debug')
    return state


# =============================================================================
# RPC METHODS - Exposed to lightning-cli
# =============================================================================

@plugin.method("stablechannel-status")
def stablechannel_status(plugin: Plugin) -> Dict[str, Any]:
    """
    Get the current peg state and recent stability payments.

    Usage: lightning-cli stablechannel-status
    """
    if stability_controller is None:
        return {"error": "Plugin not fully initialized"}

    return {
        "status": "running",
        "config": {
            "expected_usd": config.expected_usd,
            "is_stable_receiver": config.is_stable_receiver,
            "check_interval": config.check_interval,
            "risk_threshold": config.risk_threshold,
            "dry_run": config.dry_run
        },
        "node_id": stability_controller.node.node_id(),
        **stability_controller.get_status(),
        "recent_payments": stability_controller.list_payments(limit=10)
    }


@plugin.method("stablechannel-check")
def stablechannel_check(plugin: Plugin) -> Dict[str, Any]:
    """
    Run a stability check now.

    Usage: lightning-cli stablechannel-check
    """
    if stability_controller is None:
        return {"error": "Plugin not fully initialized"}

    state = run_stability_check()
    if state is None:
        return {"status": "skipped", **stability_controller.get_status()}
    return {"status": "checked", "stable_channel": state.to_dict()}


@plugin.method("stablechannel-price")
def stablechannel_price(plugin: Plugin) -> Dict[str, Any]:
    """
    Query every price feed and show the samples and their median.

    Usage: lightning-cli stablechannel-price
    """
    if price_feeds is None:
        return {"error": "Plugin not fully initialized"}

    samples = price_feeds.fetch_prices()
    median = calculate_median_price(samples)
    return {
        "median_price": round(median, 2) if median is not None else None,
        "sources": [s.to_dict() for s in samples]
    }


@plugin.method("stablechannel-reset-risk")
def stablechannel_reset_risk(plugin: Plugin) -> Dict[str, Any]:
    """
    Clear the risk counter so automatic payments resume.

    Usage: lightning-cli stablechannel-reset-risk
    """
    if stability_controller is None:
        return {"error": "Plugin not fully initialized"}

    state = stability_controller.reset_risk_level()
    if state is None:
        return {"error": "No stable channel"}
    return {"status": "success", "risk_level": state.risk_level}


@plugin.method("stablechannel-set-risk")
def stablechannel_set_risk(plugin: Plugin, level: int) -> Dict[str, Any]:
    """
    Set the risk counter, e.g. above the threshold to pause payments.

    Usage: lightning-cli stablechannel-set-risk level
    """
    if stability_controller is None:
        return {"error": "Plugin not fully initialized"}

    try:
        state = stability_controller.set_risk_level(int(level))
    except ValueError as e:
        return {"status": "error", "error": str(e)}
    if state is None:
        return {"error": "No stable channel"}
    return {"status": "success", "risk_level": state.risk_level}


@plugin.method("stablechannel-history")
def stablechannel_history(plugin: Plugin, limit: int = 20) -> Dict[str, Any]:
    """
    List recent stability payments and every channel stabilized so far.

    Usage: lightning-cli stablechannel-history [limit]
    """
    if stability_controller is None:
        return {"error": "Plugin not fully initialized"}

    return {
        "payments": stability_controller.list_payments(limit=int(limit)),
        "stable_channels": stability_controller.list_stable_channels()
    }


# =============================================================================
# NOTIFICATIONS - React to Lightning events
# =============================================================================

@plugin.subscribe("channel_state_changed")
def on_channel_state_changed(channel_state_changed: Dict, plugin: Plugin, **kwargs):
    """
    Notification when a channel changes state.

    CHANNELD_NORMAL means the channel is ready: start stabilizing it and
    check immediately. Any closing state stops evaluation of the channel.
    """
    if stability_controller is None:
        return

    new_state = channel_state_changed.get("new_state")
    channel_id = channel_state_changed.get("channel_id")
    if not channel_id:
        return

    try:
        if new_state == NORMAL_STATE:
            stability_controller.on_channel_ready(
                channel_id,
                channel_state_changed.get("peer_id", ""),
                channel_state_changed.get("short_channel_id")
            )
        elif new_state in CLOSING_STATES:
            stability_controller.on_channel_closed(channel_id)
    except Exception as e:
        plugin.log(f"Error handling channel state change for {channel_id}: {e}", level='error')


# =============================================================================
# ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    plugin.run()
