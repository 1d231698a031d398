"""
Configuration module for stable-channels

Contains the Config dataclass that holds all tunable parameters
for the Stable Channels plugin.
"""

import os
from dataclasses import dataclass
from typing import Optional


@dataclass
class Config:
    """
    Configuration container for the Stable Channels plugin.

    All values can be set via plugin options at startup.
    """

    # State directory (holds the SQLite database)
    sc_dir: str = '~/.lightning/stable-channels'

    # Peg parameters
    expected_usd: float = 100.0      # Target USD value of the stable receiver's balance
    is_stable_receiver: bool = True  # True = we want stability, False = we provide it
    counterparty: str = ''           # Node ID of the other party (empty = take from channel)
    channel_id: str = ''             # Channel to stabilize (empty = first normal channel)

    # Timer intervals (in seconds)
    check_interval: int = 30         # Stability check cadence
    wait_recheck_seconds: int = 10   # Delay before re-reading balances in the Wait branch

    # Price feeds
    price_timeout: float = 5.0       # Per-request HTTP timeout

    # Decision thresholds
    min_percent_from_par: float = 0.1  # Below this deviation (in %) do nothing
    risk_threshold: int = 100          # risk_level above this blocks payments
    risk_failure_increment: int = 25   # Added to risk_level per failed payment

    # Payment log retention
    history_days: int = 90

    # Safety flags
    dry_run: bool = False          # If True, log but don't pay

    @property
    def db_path(self) -> str:
        return os.path.join(os.path.expanduser(self.sc_dir), 'stable_channels.db')

    @property
    def counterparty_id(self) -> Optional[str]:
        return self.counterparty or None

    def validate(self) -> None:
        """
        Reject settings the control loop cannot run with.

        Raises:
            ValueError: if any value is out of range
        """
        if self.expected_usd <= 0:
            raise ValueError(f"expected_usd must be positive, got {self.expected_usd}")
        if self.check_interval <= 0:
            raise ValueError(f"check_interval must be positive, got {self.check_interval}")
        if self.wait_recheck_seconds < 0:
            raise ValueError(f"wait_recheck_seconds must not be negative, got {self.wait_recheck_seconds}")
        if self.price_timeout <= 0:
            raise ValueError(f"price_timeout must be positive, got {self.price_timeout}")
        if self.min_percent_from_par < 0:
            raise ValueError(f"min_percent_from_par must not be negative, got {self.min_percent_from_par}")
        if self.risk_failure_increment < 0:
            raise ValueError(f"risk_failure_increment must not be negative, got {self.risk_failure_increment}")
