"""
Monetary value types for stable-channels

Bitcoin amounts are held as an exact integer number of satoshis.
USD amounts are float backed; only cents are meaningful and every
string rendering is rounded to two decimals.

Conversion between the two always needs a price, expressed as
USD per whole bitcoin:

    usd   = sats / 100_000_000 * price
    msats = usd / price * 100_000_000_000
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Union


SATS_PER_BTC = 100_000_000
MSATS_PER_SAT = 1000
MSATS_PER_BTC = SATS_PER_BTC * MSATS_PER_SAT

Number = Union[int, float]


def _round_half_up(value: Union[float, Decimal]) -> int:
    """Round to the nearest integer, halves away from zero."""
    return int(Decimal(str(value)).quantize(Decimal(1), rounding=ROUND_HALF_UP))


@dataclass(frozen=True, order=True)
class Bitcoin:
    """
    An amount of bitcoin in satoshis.

    Never stored as a float. Use from_btc() to convert a fractional
    BTC value; it rounds to the nearest satoshi.
    """
    sats: int = 0

    def __post_init__(self):
        if not isinstance(self.sats, int) or isinstance(self.sats, bool):
            raise TypeError(f"Bitcoin amount must be an integer number of sats, got {self.sats!r}")

    @classmethod
    def from_sats(cls, sats: int) -> "Bitcoin":
        return cls(int(sats))

    @classmethod
    def from_btc(cls, btc: Number) -> "Bitcoin":
        """Convert fractional BTC to satoshis, rounding to the nearest sat."""
        return cls(_round_half_up(Decimal(str(btc)) * SATS_PER_BTC))

    @classmethod
    def from_usd(cls, usd: "USD", price: float) -> "Bitcoin":
        """
        Convert a USD value to bitcoin at the given price.

        Args:
            usd: Dollar amount
            price: USD per whole bitcoin (must be positive)
        """
        if price <= 0:
            raise ValueError(f"Cannot convert USD to BTC at non-positive price {price}")
        return cls(_round_half_up(usd.amount / price * SATS_PER_BTC))

    def to_msats(self) -> int:
        return self.sats * MSATS_PER_SAT

    def __add__(self, other: "Bitcoin") -> "Bitcoin":
        if not isinstance(other, Bitcoin):
            return NotImplemented
        return Bitcoin(self.sats + other.sats)

    def __sub__(self, other: "Bitcoin") -> "Bitcoin":
        if not isinstance(other, Bitcoin):
            return NotImplemented
        return Bitcoin(self.sats - other.sats)

    def __str__(self) -> str:
        sign = "-" if self.sats < 0 else ""
        whole, frac = divmod(abs(self.sats), SATS_PER_BTC)
        return f"{sign}{whole}.{frac:08d} BTC"


@dataclass(frozen=True, order=True)
class USD:
    """A dollar amount. Displayed with cent precision."""
    amount: float = 0.0

    @classmethod
    def from_f64(cls, amount: Number) -> "USD":
        return cls(float(amount))

    @classmethod
    def from_bitcoin(cls, btc: Bitcoin, price: float) -> "USD":
        """Value a bitcoin amount at `price` USD per BTC."""
        return cls(btc.sats / SATS_PER_BTC * price)

    @staticmethod
    def to_msats(usd: "USD", price: float) -> int:
        """
        Convert a dollar amount to millisatoshis at the given price.

        Exact inverse of from_bitcoin(), rounded to the nearest msat.

        Args:
            usd: Dollar amount
            price: USD per whole bitcoin (must be positive)

        Returns:
            Amount in millisatoshis
        """
        if price <= 0:
            raise ValueError(f"Cannot convert USD to msats at non-positive price {price}")
        return _round_half_up(usd.amount / price * MSATS_PER_BTC)

    def __add__(self, other: "USD") -> "USD":
        if not isinstance(other, USD):
            return NotImplemented
        return USD(self.amount + other.amount)

    def __sub__(self, other: "USD") -> "USD":
        if not isinstance(other, USD):
            return NotImplemented
        return USD(self.amount - other.amount)

    def __mul__(self, scalar: Number) -> "USD":
        if isinstance(scalar, USD):
            return NotImplemented
        return USD(self.amount * scalar)

    __rmul__ = __mul__

    def __truediv__(self, other: Union["USD", Number]):
        # USD / USD is a plain ratio
        if isinstance(other, USD):
            return self.amount / other.amount
        return USD(self.amount / other)

    def __neg__(self) -> "USD":
        return USD(-self.amount)

    def __abs__(self) -> "USD":
        return USD(abs(self.amount))

    def __float__(self) -> float:
        return self.amount

    def __round__(self, ndigits: int = 2) -> float:
        return round(self.amount, ndigits)

    def __str__(self) -> str:
        if self.amount < 0:
            return f"-${abs(self.amount):,.2f}"
        return f"${self.amount:,.2f}"
