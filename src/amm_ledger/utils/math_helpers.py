import hashlib
import math
from typing import Hashable, Tuple

from amm_ledger.ledger.errors import (
    IdenticalAssets,
    InsufficientAmount,
    InsufficientInputAmount,
    InsufficientLiquidity,
    InsufficientOutputAmount,
    NoReserves,
)

FEE_NUMERATOR = 997
FEE_DENOMINATOR = 1000
PRICE_SCALE = 10 ** 18


def canonical_order(token_a: Hashable, token_b: Hashable) -> Tuple[Hashable, Hashable]:
    """Return the pair sorted by the total order on asset identifiers."""
    if token_a < token_b:
        return token_a, token_b
    return token_b, token_a


def pair_key(token_a: Hashable, token_b: Hashable) -> str:
    """
    Derive the canonical identifier of an unordered asset pair.

    The key is the SHA-256 digest of the canonically ordered identifiers, so
    ``pair_key(a, b) == pair_key(b, a)`` for every ``a != b``.

    Raises
    ------
    IdenticalAssets
        If both identifiers are the same asset.
    """
    if token_a == token_b:
        raise IdenticalAssets(f"Pair needs two distinct assets, got {token_a!r} twice")
    token0, token1 = canonical_order(token_a, token_b)
    digest = hashlib.sha256(f"{token0}\x00{token1}".encode("utf-8"))
    return digest.hexdigest()


def quote(amount_a: int, reserve_a: int, reserve_b: int) -> int:
    """
    Return the amount of B worth ``amount_a`` of A at the current reserve ratio.

    Parameters
    ----------
    amount_a : int
        Amount of asset A.
    reserve_a : int
        Pool reserve of asset A.
    reserve_b : int
        Pool reserve of asset B.

    Returns
    -------
    int
        ``floor(amount_a * reserve_b / reserve_a)``.

    Raises
    ------
    InsufficientAmount
        If ``amount_a`` is zero.
    InsufficientLiquidity
        If either reserve is zero.
    """
    if amount_a <= 0:
        raise InsufficientAmount("quote amount must be positive")
    if reserve_a <= 0 or reserve_b <= 0:
        raise InsufficientLiquidity("cannot quote against an empty reserve")
    return amount_a * reserve_b // reserve_a


def get_amount_out(amount_in: int, reserve_in: int, reserve_out: int) -> int:
    """
    Compute the output of a swap with the 0.3% fee retained by the pool.

    ``amount_out = floor(amount_in * 997 * reserve_out / (reserve_in * 1000 + amount_in * 997))``

    Raises
    ------
    InsufficientInputAmount
        If ``amount_in`` is zero.
    InsufficientLiquidity
        If either reserve is zero.
    """
    if amount_in <= 0:
        raise InsufficientInputAmount("swap input must be positive")
    if reserve_in <= 0 or reserve_out <= 0:
        raise InsufficientLiquidity("pool has no reserves on one side")
    amount_in_with_fee = amount_in * FEE_NUMERATOR
    numerator = amount_in_with_fee * reserve_out
    denominator = reserve_in * FEE_DENOMINATOR + amount_in_with_fee
    return numerator // denominator


def get_amount_in(amount_out: int, reserve_in: int, reserve_out: int) -> int:
    """
    Input that yields at least ``amount_out`` through :func:`get_amount_out`.

    Raises
    ------
    InsufficientOutputAmount
        If ``amount_out`` is zero.
    InsufficientLiquidity
        If either reserve is zero or ``amount_out`` would drain ``reserve_out``.
    """
    if amount_out <= 0:
        raise InsufficientOutputAmount("requested output must be positive")
    if reserve_in <= 0 or reserve_out <= 0 or amount_out >= reserve_out:
        raise InsufficientLiquidity("pool cannot supply the requested output")
    numerator = reserve_in * amount_out * FEE_DENOMINATOR
    denominator = (reserve_out - amount_out) * FEE_NUMERATOR
    return numerator // denominator + 1


def compute_price(reserve_a: int, reserve_b: int, scale: int = PRICE_SCALE) -> int:
    """Price of one unit of A in B as a fixed-point integer with ``scale`` as 1.0."""
    if reserve_a <= 0:
        raise NoReserves("price is undefined for an empty pool")
    return reserve_b * scale // reserve_a


def proportional_shares(amount_a: int, amount_b: int, reserve_a: int, reserve_b: int, total_shares: int) -> int:
    """Shares justified by the weaker side of a deposit into a seeded pool."""
    return min(amount_a * total_shares // reserve_a, amount_b * total_shares // reserve_b)


def geometric_shares(amount_a: int, amount_b: int) -> int:
    """Geometric-mean mint, ``isqrt(amount_a * amount_b)``."""
    return math.isqrt(amount_a * amount_b)


def compute_burn(shares: int, reserve_a: int, reserve_b: int, total_shares: int) -> Tuple[int, int]:
    """Amounts of A and B owed for burning ``shares`` out of ``total_shares``."""
    if total_shares <= 0:
        raise InsufficientLiquidity("pool has no outstanding shares")
    return shares * reserve_a // total_shares, shares * reserve_b // total_shares
