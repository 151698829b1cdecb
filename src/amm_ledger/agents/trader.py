from mesa import Agent
from typing import Callable, Optional
import logging

import numpy as np

from amm_ledger.ledger.errors import AMMError

logger = logging.getLogger(__name__)


class TraderAgent(Agent):
    """
    Agent that swaps a random slice of its balance through a random pool each step.

    Attributes:
        ledger (PoolLedger): Ledger the trader swaps against.
        max_trade_fraction (float): Upper bound on the share of a balance sold per swap.
        slippage_bps (int): Tolerated shortfall from the previewed output, in basis points.
        trade_probability (float): Chance of trading on a given step.
        on_trade (Callable): Optional callback after a successful swap.
        _rng (np.random.Generator): Random number generator for trade decisions.
    """

    def __init__(
        self,
        model,
        ledger,
        max_trade_fraction: float = 0.05,
        slippage_tolerance: float = 0.005,
        trade_probability: float = 1.0,
        on_trade: Optional[Callable] = None,
        seed: Optional[int] = None,
    ):
        super().__init__(model)
        if not 0 < max_trade_fraction <= 1:
            raise ValueError("max_trade_fraction must be in (0, 1]")
        self.ledger = ledger
        self.max_trade_fraction = float(max_trade_fraction)
        self.slippage_bps = int(round(float(slippage_tolerance) * 10_000))
        self.trade_probability = float(trade_probability)
        self.on_trade = on_trade
        self.trades = 0
        self._rng = np.random.default_rng(seed if seed is not None else self.model.random.getrandbits(32))

    def _pick_direction(self):
        pairs = self.model.pool_pairs
        token_a, token_b = pairs[self._rng.integers(len(pairs))]
        if self._rng.random() < 0.5:
            return token_a, token_b
        return token_b, token_a

    def step(self):
        """Preview a swap, then execute it with a slippage-bounded minimum output."""
        if not self.model.pool_pairs or self._rng.random() >= self.trade_probability:
            return

        token_in, token_out = self._pick_direction()
        balance = self.ledger.tokens[token_in].balance_of(self)
        amount_in = int(balance * self._rng.uniform(0.0, self.max_trade_fraction))
        if amount_in <= 0:
            return

        try:
            expected = self.ledger.get_amount_out(token_in, amount_in, token_out)
            amount_out_min = expected * (10_000 - self.slippage_bps) // 10_000
            amount_out = self.ledger.swap(self, token_in, amount_in, token_out, amount_out_min)
        except AMMError as exc:
            self.model.record_rejection(self, "swap", exc)
            return

        self.trades += 1
        logger.debug("Trader %s sold %d %s for %d %s", self.unique_id, amount_in, token_in, amount_out, token_out)
        if self.on_trade:
            self.on_trade(self, token_in, amount_in, token_out, amount_out)
