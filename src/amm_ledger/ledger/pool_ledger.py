import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, Hashable, Mapping, Optional, Tuple, Union

from amm_ledger.ledger.errors import (
    InsufficientAAmount,
    InsufficientAmount,
    InsufficientBAmount,
    InsufficientInputAmount,
    InsufficientLiquidity,
    InsufficientLiquidityBurned,
    InsufficientLiquidityMinted,
    InsufficientOutputAmount,
    LogicError,
    PairNotFound,
    TransferFailed,
    UnknownToken,
)
from amm_ledger.utils.math_helpers import (
    PRICE_SCALE,
    canonical_order,
    compute_burn,
    compute_price,
    geometric_shares,
    get_amount_out,
    pair_key,
    proportional_shares,
    quote,
)

logger = logging.getLogger(__name__)

MINIMUM_LIQUIDITY = 1000
BPS_DENOMINATOR = 10_000
DEFAULT_BOOTSTRAP_SHARES = 1000 * 10 ** 18
BURN_ADDRESS = "0x000000000000000000000000000000000000dEaD"


class MintPolicy(str, Enum):
    """
    Rule for the shares minted by the first deposit into an empty pool.
    - FIXED: mint a constant bootstrap quantity regardless of the amounts.
    - GEOMETRIC: mint isqrt(amount_a * amount_b), locking MINIMUM_LIQUIDITY forever.
    - PRODUCT: mint amount_a * amount_b / 10**18.
    """
    FIXED = "fixed"
    GEOMETRIC = "geometric"
    PRODUCT = "product"


class Pool:
    """
    Reserves and liquidity shares of one asset pair, stored in canonical order.

    Attributes:
        token0 (Hashable): Lower asset identifier.
        token1 (Hashable): Higher asset identifier.
        reserve0 (int): Recorded balance of token0.
        reserve1 (int): Recorded balance of token1.
        total_shares (int): Liquidity shares issued.
        share_balances (Dict[Any, int]): Shares held per liquidity provider.
    """

    def __init__(self, token0: Hashable, token1: Hashable):
        self.token0 = token0
        self.token1 = token1
        self.reserve0 = 0
        self.reserve1 = 0
        self.total_shares = 0
        self.share_balances: Dict[Any, int] = {}

    @property
    def key(self) -> str:
        return pair_key(self.token0, self.token1)

    def get_k(self) -> int:
        """Return the constant-product invariant reserve0 * reserve1."""
        return self.reserve0 * self.reserve1

    def reserves_for(self, token_a: Hashable) -> Tuple[int, int]:
        """Return reserves ordered as (token_a, other token)."""
        if token_a == self.token0:
            return self.reserve0, self.reserve1
        return self.reserve1, self.reserve0

    def set_reserves(self, token_a: Hashable, reserve_a: int, reserve_b: int) -> None:
        if token_a == self.token0:
            self.reserve0, self.reserve1 = reserve_a, reserve_b
        else:
            self.reserve0, self.reserve1 = reserve_b, reserve_a

    def snapshot(self) -> Dict[str, Any]:
        return {
            "reserve0": self.reserve0,
            "reserve1": self.reserve1,
            "total_shares": self.total_shares,
            "share_balances": self.share_balances.copy(),
        }

    def restore(self, snap: Dict[str, Any]) -> None:
        self.reserve0 = snap["reserve0"]
        self.reserve1 = snap["reserve1"]
        self.total_shares = snap["total_shares"]
        self.share_balances = snap["share_balances"].copy()


class PoolLedger:
    """
    Constant-product accounting engine for any number of two-asset pools.

    Pools are keyed by :func:`pair_key` and created lazily on first deposit.
    Every mutation runs under one lock, and every precondition is checked
    before the first custody call, so a failed operation leaves the ledger
    untouched.

    Attributes:
        tokens (Dict[Hashable, Any]): Custody service per asset identifier.
        address (Any): Identity under which the ledger holds pooled funds.
        mint_policy (MintPolicy): Share mint rule for a pool's first deposit.
        bootstrap_shares (int): Shares minted under MintPolicy.FIXED.
        price_scale (int): Fixed-point unit used by :meth:`price`.
        pools (Dict[str, Pool]): Pool per pair key.
        on_swap (Callable): Optional hook for swap events.
        on_deposit (Callable): Optional hook for deposit events.
        on_withdraw (Callable): Optional hook for withdraw events.
    """

    def __init__(
        self,
        tokens: Mapping[Hashable, Any],
        address: Any = "amm-ledger",
        mint_policy: Union[str, MintPolicy] = MintPolicy.FIXED,
        bootstrap_shares: int = DEFAULT_BOOTSTRAP_SHARES,
        price_scale: int = PRICE_SCALE,
        on_swap: Optional[Callable] = None,
        on_deposit: Optional[Callable] = None,
        on_withdraw: Optional[Callable] = None,
    ):
        if bootstrap_shares <= 0:
            raise ValueError("bootstrap_shares must be positive")
        self.tokens: Dict[Hashable, Any] = dict(tokens)
        self.address = address
        self.mint_policy = MintPolicy(mint_policy)
        self.bootstrap_shares = int(bootstrap_shares)
        self.price_scale = int(price_scale)
        self.pools: Dict[str, Pool] = {}

        self.on_swap = on_swap
        self.on_deposit = on_deposit
        self.on_withdraw = on_withdraw

        self._lock = threading.RLock()

    # -- registry ---------------------------------------------------------

    def _custody(self, token: Hashable) -> Any:
        try:
            return self.tokens[token]
        except KeyError:
            raise UnknownToken(f"No custody service registered for {token!r}") from None

    def create_pair(self, token_a: Hashable, token_b: Hashable) -> str:
        """Register an empty pool for the pair, if missing, and return its key."""
        key = pair_key(token_a, token_b)
        self._custody(token_a)
        self._custody(token_b)
        with self._lock:
            if key not in self.pools:
                self.pools[key] = Pool(*canonical_order(token_a, token_b))
                logger.info("Created pair %s/%s (%s)", token_a, token_b, key[:12])
        return key

    def get_pool(self, token_a: Hashable, token_b: Hashable) -> Pool:
        """Return the pool for the pair or raise PairNotFound."""
        pool = self.pools.get(pair_key(token_a, token_b))
        if pool is None:
            raise PairNotFound(f"No pool for {token_a!r}/{token_b!r}")
        return pool

    # -- read-only queries ------------------------------------------------

    def get_reserves(self, token_a: Hashable, token_b: Hashable) -> Tuple[int, int]:
        """Return (reserve_a, reserve_b) in the caller's order; (0, 0) for an unknown pair."""
        with self._lock:
            pool = self.pools.get(pair_key(token_a, token_b))
            if pool is None:
                return 0, 0
            return pool.reserves_for(token_a)

    def total_shares(self, token_a: Hashable, token_b: Hashable) -> int:
        pool = self.pools.get(pair_key(token_a, token_b))
        return pool.total_shares if pool else 0

    def share_balance(self, token_a: Hashable, token_b: Hashable, owner: Any) -> int:
        pool = self.pools.get(pair_key(token_a, token_b))
        return pool.share_balances.get(owner, 0) if pool else 0

    def quote(self, amount_a: int, token_a: Hashable, token_b: Hashable) -> int:
        """Amount of token_b matching ``amount_a`` of token_a at the current ratio."""
        reserve_a, reserve_b = self.get_reserves(token_a, token_b)
        return quote(amount_a, reserve_a, reserve_b)

    def get_amount_out(self, token_in: Hashable, amount_in: int, token_out: Hashable) -> int:
        """Preview the output of :meth:`swap` without touching state."""
        if token_in == token_out:
            raise InsufficientLiquidity("Cannot swap an asset for itself")
        reserve_in, reserve_out = self.get_reserves(token_in, token_out)
        return get_amount_out(amount_in, reserve_in, reserve_out)

    def price(self, token_a: Hashable, token_b: Hashable) -> int:
        """Price of token_a in token_b, scaled by ``price_scale``."""
        reserve_a, reserve_b = self.get_reserves(token_a, token_b)
        return compute_price(reserve_a, reserve_b, self.price_scale)

    # -- custody interactions ---------------------------------------------

    def _pull(self, custody: Any, owner: Any, amount: int) -> int:
        """Transfer ``amount`` into the ledger and return what actually arrived."""
        before = custody.balance_of(self.address)
        if not custody.transfer_from(self.address, owner, self.address, amount):
            raise TransferFailed(f"Could not pull {amount} {custody.address} from {owner}")
        return custody.balance_of(self.address) - before

    def _push(self, custody: Any, to: Any, amount: int) -> None:
        if amount and not custody.transfer(self.address, to, amount):
            raise TransferFailed(f"Could not pay {amount} {custody.address} to {to}")

    def _expected_receipt(self, custody: Any, amount: int) -> int:
        """Amount expected to arrive from a pull of ``amount``, net of any advertised transfer fee."""
        fee_bps = getattr(custody, "transfer_fee_bps", 0)
        return amount - amount * fee_bps // BPS_DENOMINATOR

    # -- liquidity ----------------------------------------------------------

    def _deposit_amounts(
        self,
        reserve_a: int,
        reserve_b: int,
        amount_a_desired: int,
        amount_b_desired: int,
        amount_a_min: int,
        amount_b_min: int,
    ) -> Tuple[int, int]:
        if reserve_a == 0 and reserve_b == 0:
            return amount_a_desired, amount_b_desired

        amount_b_optimal = quote(amount_a_desired, reserve_a, reserve_b)
        if amount_b_optimal <= amount_b_desired:
            if amount_b_optimal < amount_b_min:
                raise InsufficientBAmount(f"B amount {amount_b_optimal} is below the minimum {amount_b_min}")
            return amount_a_desired, amount_b_optimal

        amount_a_optimal = quote(amount_b_desired, reserve_b, reserve_a)
        if amount_a_optimal > amount_a_desired:
            raise LogicError(f"Optimal A amount {amount_a_optimal} exceeds desired {amount_a_desired}")
        if amount_a_optimal < amount_a_min:
            raise InsufficientAAmount(f"A amount {amount_a_optimal} is below the minimum {amount_a_min}")
        return amount_a_optimal, amount_b_desired

    def _shares_to_mint(
        self, amount_a: int, amount_b: int, reserve_a: int, reserve_b: int, total_shares: int
    ) -> Tuple[int, int]:
        """Return (shares for the recipient, shares locked at BURN_ADDRESS)."""
        if total_shares == 0:
            if self.mint_policy == MintPolicy.GEOMETRIC:
                root = geometric_shares(amount_a, amount_b)
                if root <= MINIMUM_LIQUIDITY:
                    raise InsufficientLiquidityMinted(
                        f"Initial deposit mints {root} shares, needs more than {MINIMUM_LIQUIDITY}"
                    )
                return root - MINIMUM_LIQUIDITY, MINIMUM_LIQUIDITY
            if self.mint_policy == MintPolicy.PRODUCT:
                liquidity = amount_a * amount_b // 10 ** 18
            else:
                liquidity = self.bootstrap_shares
        else:
            if reserve_a == 0 or reserve_b == 0:
                raise LogicError("Pool has outstanding shares but an empty reserve")
            liquidity = proportional_shares(amount_a, amount_b, reserve_a, reserve_b, total_shares)

        if liquidity == 0:
            raise InsufficientLiquidityMinted("Deposit is too small to mint any shares")
        return liquidity, 0

    def add_liquidity(
        self,
        provider: Any,
        token_a: Hashable,
        token_b: Hashable,
        amount_a_desired: int,
        amount_b_desired: int,
        amount_a_min: int = 0,
        amount_b_min: int = 0,
        recipient: Any = None,
    ) -> Tuple[int, int, int]:
        """
        Deposit both assets at the pool's current ratio and mint liquidity shares.

        The first deposit seeds the pool at the caller's ratio. Later deposits
        take all of one desired amount and the matching amount of the other,
        never more than desired on either side.

        Shares are minted on the amounts that actually reached the ledger, so a
        fee-on-transfer asset never credits the provider for tokens the pool did
        not receive. If the received amounts mint nothing, both pulls are
        refunded and InsufficientLiquidityMinted is raised.

        Args:
            provider (Any): Account the assets are pulled from.
            token_a (Hashable): First asset, in the caller's order.
            token_b (Hashable): Second asset.
            amount_a_desired (int): Most of token_a the provider will deposit.
            amount_b_desired (int): Most of token_b the provider will deposit.
            amount_a_min (int): Least of token_a the provider accepts to deposit.
            amount_b_min (int): Least of token_b the provider accepts to deposit.
            recipient (Any): Account credited with the shares, defaults to provider.

        Returns:
            Tuple[int, int, int]: Deposited amount_a, amount_b and shares minted.
        """
        recipient = provider if recipient is None else recipient
        if amount_a_desired <= 0 or amount_b_desired <= 0:
            raise InsufficientAmount("Both desired amounts must be positive")
        key = pair_key(token_a, token_b)
        custody_a = self._custody(token_a)
        custody_b = self._custody(token_b)

        with self._lock:
            pool = self.pools.get(key)
            reserve_a, reserve_b = pool.reserves_for(token_a) if pool else (0, 0)
            total_shares = pool.total_shares if pool else 0

            amount_a, amount_b = self._deposit_amounts(
                reserve_a, reserve_b, amount_a_desired, amount_b_desired, amount_a_min, amount_b_min
            )
            self._shares_to_mint(
                self._expected_receipt(custody_a, amount_a),
                self._expected_receipt(custody_b, amount_b),
                reserve_a,
                reserve_b,
                total_shares,
            )

            if custody_a.balance_of(provider) < amount_a:
                raise TransferFailed(f"{provider} holds less than {amount_a} {token_a}")
            if custody_b.balance_of(provider) < amount_b:
                raise TransferFailed(f"{provider} holds less than {amount_b} {token_b}")

            received_a = self._pull(custody_a, provider, amount_a)
            try:
                received_b = self._pull(custody_b, provider, amount_b)
            except TransferFailed:
                self._push(custody_a, provider, received_a)
                raise

            try:
                liquidity, locked = self._shares_to_mint(received_a, received_b, reserve_a, reserve_b, total_shares)
            except InsufficientLiquidityMinted:
                self._push(custody_a, provider, received_a)
                self._push(custody_b, provider, received_b)
                raise

            if pool is None:
                pool = self.pools[key] = Pool(*canonical_order(token_a, token_b))
            if locked:
                pool.share_balances[BURN_ADDRESS] = pool.share_balances.get(BURN_ADDRESS, 0) + locked
            pool.share_balances[recipient] = pool.share_balances.get(recipient, 0) + liquidity
            pool.total_shares += liquidity + locked
            pool.set_reserves(token_a, reserve_a + received_a, reserve_b + received_b)

            logger.info(
                "Deposit into %s/%s: %d + %d received, minted %d shares for %s",
                token_a, token_b, received_a, received_b, liquidity, recipient,
            )
            if self.on_deposit:
                self.on_deposit(self, provider, amount_a, amount_b, liquidity)

        return amount_a, amount_b, liquidity

    def remove_liquidity(
        self,
        provider: Any,
        token_a: Hashable,
        token_b: Hashable,
        shares: int,
        amount_a_min: int = 0,
        amount_b_min: int = 0,
        recipient: Any = None,
    ) -> Tuple[int, int]:
        """
        Burn ``shares`` held by ``provider`` and pay out the proportional reserves.

        Returns:
            Tuple[int, int]: Amounts of token_a and token_b paid to the recipient.
        """
        recipient = provider if recipient is None else recipient
        if shares <= 0:
            raise InsufficientLiquidityBurned("Shares to burn must be positive")
        custody_a = self._custody(token_a)
        custody_b = self._custody(token_b)

        with self._lock:
            pool = self.get_pool(token_a, token_b)
            held = pool.share_balances.get(provider, 0)
            if held < shares:
                raise InsufficientLiquidity(f"{provider} holds {held} shares, cannot burn {shares}")

            reserve_a, reserve_b = pool.reserves_for(token_a)
            amount_a, amount_b = compute_burn(shares, reserve_a, reserve_b, pool.total_shares)
            if amount_a < amount_a_min:
                raise InsufficientAAmount(f"A amount {amount_a} is below the minimum {amount_a_min}")
            if amount_b < amount_b_min:
                raise InsufficientBAmount(f"B amount {amount_b} is below the minimum {amount_b_min}")

            if custody_a.balance_of(self.address) < amount_a or custody_b.balance_of(self.address) < amount_b:
                raise LogicError("Ledger custody balance is below its recorded reserves")

            snap = pool.snapshot()
            pool.share_balances[provider] = held - shares
            pool.total_shares -= shares
            pool.set_reserves(token_a, reserve_a - amount_a, reserve_b - amount_b)

            try:
                self._push(custody_a, recipient, amount_a)
                self._push(custody_b, recipient, amount_b)
            except TransferFailed:
                pool.restore(snap)
                raise

            logger.info(
                "Withdrawal from %s/%s: burned %d shares of %s for %d + %d",
                token_a, token_b, shares, provider, amount_a, amount_b,
            )
            if self.on_withdraw:
                self.on_withdraw(self, provider, amount_a, amount_b)

        return amount_a, amount_b

    # -- swaps ------------------------------------------------------------

    def swap(
        self,
        trader: Any,
        token_in: Hashable,
        amount_in: int,
        token_out: Hashable,
        amount_out_min: int = 0,
        recipient: Any = None,
    ) -> int:
        """
        Sell exactly ``amount_in`` of token_in for token_out at the constant-product price.

        The 0.3% fee stays in the pool, so reserve_in * reserve_out strictly
        grows with every swap.

        The output is priced on the input net of the custody service's
        ``transfer_fee_bps``, so a fee-on-transfer swap that would miss
        ``amount_out_min`` fails before any transfer. A service that keeps an
        unadvertised fee is only detected after the pull; the received input is
        then refunded, and that refund pays the service's fee a second time.

        Returns:
            int: Amount of token_out paid to the recipient.
        """
        recipient = trader if recipient is None else recipient
        if token_in == token_out:
            raise InsufficientLiquidity("Cannot swap an asset for itself")
        if amount_in <= 0:
            raise InsufficientInputAmount("Swap input must be positive")
        key = pair_key(token_in, token_out)
        custody_in = self._custody(token_in)
        custody_out = self._custody(token_out)

        with self._lock:
            pool = self.pools.get(key)
            if pool is None or pool.reserve0 == 0 or pool.reserve1 == 0:
                raise InsufficientLiquidity(f"No liquidity for {token_in!r}/{token_out!r}")
            reserve_in, reserve_out = pool.reserves_for(token_in)

            expected_in = self._expected_receipt(custody_in, amount_in)
            amount_out = get_amount_out(expected_in, reserve_in, reserve_out) if expected_in > 0 else 0
            if amount_out == 0 or amount_out < amount_out_min:
                raise InsufficientOutputAmount(f"Output {amount_out} is below the minimum {amount_out_min}")
            if custody_in.balance_of(trader) < amount_in:
                raise TransferFailed(f"{trader} holds less than {amount_in} {token_in}")

            received = self._pull(custody_in, trader, amount_in)
            if received != expected_in:
                # the custody service kept more of the input than it advertised
                amount_out = get_amount_out(received, reserve_in, reserve_out) if received > 0 else 0
                if amount_out == 0 or amount_out < amount_out_min:
                    self._push(custody_in, trader, received)
                    raise InsufficientOutputAmount(
                        f"Output {amount_out} after transfer fee is below the minimum {amount_out_min}"
                    )

            snap = pool.snapshot()
            pool.set_reserves(token_in, reserve_in + received, reserve_out - amount_out)
            try:
                self._push(custody_out, recipient, amount_out)
            except TransferFailed:
                pool.restore(snap)
                self._push(custody_in, trader, received)
                raise

            logger.info(
                "Swap by %s: %d %s -> %d %s", trader, amount_in, token_in, amount_out, token_out
            )
            if self.on_swap:
                self.on_swap(self, trader, token_in, amount_in, token_out, amount_out)

        return amount_out
