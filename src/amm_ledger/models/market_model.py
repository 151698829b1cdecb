# src/amm_ledger/models/market_model.py

import logging
from typing import Dict, List, Tuple

from mesa import Model
from mesa.datacollection import DataCollector

from amm_ledger.agents.liquidity_provider import LiquidityProviderAgent
from amm_ledger.agents.token import TokenAgent
from amm_ledger.agents.trader import TraderAgent
from amm_ledger.ledger.errors import AMMError, NoReserves
from amm_ledger.ledger.pool_ledger import DEFAULT_BOOTSTRAP_SHARES, PoolLedger
from amm_ledger.utils.config_parser import to_base_units, validate_config

logger = logging.getLogger(__name__)

MAX_ALLOWANCE = 2 ** 256 - 1
TREASURY = "treasury"


class MarketModel(Model):
    """
    Mesa model that runs liquidity providers and traders against one PoolLedger.

    - Tokens, pools and agent populations come from a config dict.
    - The treasury account seeds every configured pool before step 1.
    - Agents act in shuffled order each step; rejected ledger operations are
      counted in ``metrics["rejections"]`` rather than raised.
    """

    def __init__(self, config: dict):
        validate_config(config)
        sim_cfg = config.get("simulation", {})
        super().__init__(seed=sim_cfg.get("seed", None))

        self.num_steps = sim_cfg.get("steps", 100)

        # --- Tokens ---
        self.tokens: Dict[str, TokenAgent] = {}
        for token_cfg in config["tokens"]:
            token = TokenAgent(
                self,
                address=token_cfg["address"],
                symbol=token_cfg.get("symbol"),
                decimals=int(token_cfg.get("decimals", 18)),
                transfer_fee_bps=int(token_cfg.get("transfer_fee_bps", 0)),
            )
            self.tokens[token.address] = token

        # --- Ledger ---
        ledger_cfg = config.get("ledger", {})
        self.ledger = PoolLedger(
            self.tokens,
            address=ledger_cfg.get("address", "amm-ledger"),
            mint_policy=ledger_cfg.get("mint_policy", "fixed"),
            bootstrap_shares=int(ledger_cfg.get("bootstrap_shares", DEFAULT_BOOTSTRAP_SHARES)),
        )

        self.pool_pairs: List[Tuple[str, str]] = []
        self.metrics = {
            "rejections": {},
            "swaps": 0,
            "deposits": 0,
            "withdrawals": 0,
        }
        self.ledger.on_swap = self._count("swaps")
        self.ledger.on_deposit = self._count("deposits")
        self.ledger.on_withdraw = self._count("withdrawals")

        self._seed_pools(config["pools"])
        self._init_providers(config.get("providers", []))
        self._init_traders(config.get("traders", []))

        self.datacollector = DataCollector(model_reporters=self._pool_reporters())

    def _count(self, name: str):
        def hook(*args):
            self.metrics[name] += 1
        return hook

    def _units(self, token: str, amount) -> int:
        return to_base_units(amount, self.tokens[token].decimals)

    def _fund(self, account, budget) -> None:
        """Mint ``budget`` of every token to ``account`` and approve the ledger to pull it."""
        for address, token in self.tokens.items():
            token.mint(account, self._units(address, budget))
            token.approve(account, self.ledger.address, MAX_ALLOWANCE)

    def _seed_pools(self, pools_cfg: list):
        for pool_cfg in pools_cfg:
            token_a, token_b = pool_cfg["token_a"], pool_cfg["token_b"]
            amount_a = self._units(token_a, pool_cfg.get("amount_a", 0))
            amount_b = self._units(token_b, pool_cfg.get("amount_b", 0))
            self.ledger.create_pair(token_a, token_b)
            self.pool_pairs.append((token_a, token_b))
            if amount_a and amount_b:
                self.tokens[token_a].mint(TREASURY, amount_a)
                self.tokens[token_b].mint(TREASURY, amount_b)
                self.tokens[token_a].approve(TREASURY, self.ledger.address, amount_a)
                self.tokens[token_b].approve(TREASURY, self.ledger.address, amount_b)
                self.ledger.add_liquidity(TREASURY, token_a, token_b, amount_a, amount_b)

    def _init_providers(self, providers_cfg: list):
        for cfg in providers_cfg:
            for _ in range(int(cfg.get("count", 1))):
                agent = LiquidityProviderAgent(
                    self,
                    self.ledger,
                    deposit_fraction=float(cfg.get("deposit_fraction", 0.1)),
                    withdraw_probability=float(cfg.get("withdraw_probability", 0.2)),
                    withdraw_fraction=float(cfg.get("withdraw_fraction", 0.5)),
                    slippage_tolerance=float(cfg.get("slippage_tolerance", 0.01)),
                )
                self._fund(agent, cfg.get("budget", 0))

    def _init_traders(self, traders_cfg: list):
        for cfg in traders_cfg:
            for _ in range(int(cfg.get("count", 1))):
                agent = TraderAgent(
                    self,
                    self.ledger,
                    max_trade_fraction=float(cfg.get("max_trade_fraction", 0.05)),
                    slippage_tolerance=float(cfg.get("slippage_tolerance", 0.005)),
                    trade_probability=float(cfg.get("trade_probability", 1.0)),
                )
                self._fund(agent, cfg.get("budget", 0))

    def _pool_reporters(self) -> dict:
        """Reserve, invariant and price series for every configured pool."""
        reporters = {}
        for token_a, token_b in self.pool_pairs:
            label = f"{token_a}/{token_b}"
            reporters[f"{label} reserve_a"] = lambda m, a=token_a, b=token_b: m.ledger.get_reserves(a, b)[0]
            reporters[f"{label} reserve_b"] = lambda m, a=token_a, b=token_b: m.ledger.get_reserves(a, b)[1]
            reporters[f"{label} k"] = lambda m, a=token_a, b=token_b: m.ledger.get_pool(a, b).get_k()
            reporters[f"{label} price"] = lambda m, a=token_a, b=token_b: m.pool_price(a, b)
        return reporters

    def pool_price(self, token_a: str, token_b: str) -> float:
        """Price of token_a in token_b as a float, NaN for an empty pool."""
        try:
            return self.ledger.price(token_a, token_b) / self.ledger.price_scale
        except NoReserves:
            return float("nan")

    def record_rejection(self, agent, action: str, exc: AMMError) -> None:
        """Count a ledger operation that an agent attempted and the ledger refused."""
        reason = type(exc).__name__
        counts = self.metrics["rejections"]
        counts[reason] = counts.get(reason, 0) + 1
        logger.debug("Agent %s %s rejected: %s", agent.unique_id, action, exc)

    def step(self):
        """
        Advance the market one tick:
          1. Activate all agents' step() in a random order.
          2. Collect pool reserves, invariant and price.
        """
        self.agents.shuffle_do("step")
        self.datacollector.collect(self)
