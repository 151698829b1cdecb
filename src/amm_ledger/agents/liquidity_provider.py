from mesa import Agent
from typing import Optional
import logging

import numpy as np

from amm_ledger.ledger.errors import AMMError

logger = logging.getLogger(__name__)


class LiquidityProviderAgent(Agent):
    """
    Agent that deposits into pools at the current ratio and occasionally withdraws.

    Attributes:
        ledger (PoolLedger): Ledger holding the pools.
        deposit_fraction (float): Share of the token_a balance offered per deposit.
        withdraw_probability (float): Chance of withdrawing instead of depositing.
        withdraw_fraction (float): Share of held pool shares burned per withdrawal.
        slippage_bps (int): Tolerated deviation of the deposited amounts, in basis points.
    """

    def __init__(
        self,
        model,
        ledger,
        deposit_fraction: float = 0.1,
        withdraw_probability: float = 0.2,
        withdraw_fraction: float = 0.5,
        slippage_tolerance: float = 0.01,
        seed: Optional[int] = None,
    ):
        super().__init__(model)
        self.ledger = ledger
        self.deposit_fraction = float(deposit_fraction)
        self.withdraw_probability = float(withdraw_probability)
        self.withdraw_fraction = float(withdraw_fraction)
        self.slippage_bps = int(round(float(slippage_tolerance) * 10_000))
        self._rng = np.random.default_rng(seed if seed is not None else self.model.random.getrandbits(32))

    def _min_amount(self, amount: int) -> int:
        return amount * (10_000 - self.slippage_bps) // 10_000

    def deposit(self, token_a, token_b) -> Optional[int]:
        """Offer ``deposit_fraction`` of the token_a balance and the matching token_b amount."""
        amount_a = int(self.ledger.tokens[token_a].balance_of(self) * self.deposit_fraction)
        balance_b = self.ledger.tokens[token_b].balance_of(self)
        if amount_a <= 0 or balance_b <= 0:
            return None
        try:
            if self.ledger.total_shares(token_a, token_b) == 0:
                amount_b = int(balance_b * self.deposit_fraction)
            else:
                amount_b = min(self.ledger.quote(amount_a, token_a, token_b), balance_b)
            _, _, liquidity = self.ledger.add_liquidity(
                self,
                token_a,
                token_b,
                amount_a,
                amount_b,
                self._min_amount(amount_a) if amount_b < balance_b else 0,
                self._min_amount(amount_b),
            )
        except AMMError as exc:
            self.model.record_rejection(self, "deposit", exc)
            return None
        logger.debug("Provider %s minted %d shares in %s/%s", self.unique_id, liquidity, token_a, token_b)
        return liquidity

    def withdraw(self, token_a, token_b) -> Optional[tuple]:
        """Burn ``withdraw_fraction`` of the shares held in the pool."""
        shares = int(self.ledger.share_balance(token_a, token_b, self) * self.withdraw_fraction)
        if shares <= 0:
            return None
        try:
            return self.ledger.remove_liquidity(self, token_a, token_b, shares)
        except AMMError as exc:
            self.model.record_rejection(self, "withdraw", exc)
            return None

    def step(self):
        pairs = self.model.pool_pairs
        if not pairs:
            return
        token_a, token_b = pairs[self._rng.integers(len(pairs))]
        if self._rng.random() < self.withdraw_probability and self.ledger.share_balance(token_a, token_b, self) > 0:
            self.withdraw(token_a, token_b)
        else:
            self.deposit(token_a, token_b)
