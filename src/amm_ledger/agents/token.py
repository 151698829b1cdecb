from mesa import Agent
from typing import Any, Dict, Optional, Tuple
import logging

logger = logging.getLogger(__name__)

BPS_DENOMINATOR = 10_000


class TokenAgent(Agent):
    """
    Fungible-token custody service with ERC20-style balances and allowances.

    Attributes:
        address (str): Asset identifier of the token.
        symbol (str): Display symbol.
        decimals (int): Number of decimals of one whole unit.
        total_supply (int): Tokens in existence.
        transfer_fee_bps (int): Fee burned on every transfer, in basis points.
        balances (Dict[Any, int]): Holder to balance.
        allowances (Dict[Tuple[Any, Any], int]): (owner, spender) to allowance.
    """

    def __init__(
        self,
        model,
        address: str,
        symbol: Optional[str] = None,
        decimals: int = 18,
        transfer_fee_bps: int = 0,
    ):
        super().__init__(model)
        if not 0 <= transfer_fee_bps < BPS_DENOMINATOR:
            raise ValueError(f"transfer_fee_bps must be in [0, {BPS_DENOMINATOR}), got {transfer_fee_bps}")
        self.address = address
        self.symbol = symbol or address
        self.decimals = int(decimals)
        self.transfer_fee_bps = int(transfer_fee_bps)
        self.total_supply = 0
        self.balances: Dict[Any, int] = {}
        self.allowances: Dict[Tuple[Any, Any], int] = {}

    def balance_of(self, owner: Any) -> int:
        """Return the token balance held by ``owner``."""
        return self.balances.get(owner, 0)

    def allowance(self, owner: Any, spender: Any) -> int:
        """Return how much ``spender`` may still move on behalf of ``owner``."""
        return self.allowances.get((owner, spender), 0)

    def mint(self, to: Any, amount: int) -> None:
        """Create ``amount`` new tokens for ``to``."""
        if amount < 0:
            raise ValueError("Cannot mint a negative amount")
        self.balances[to] = self.balance_of(to) + amount
        self.total_supply += amount

    def approve(self, owner: Any, spender: Any, amount: int) -> bool:
        """Set the allowance of ``spender`` over ``owner``'s tokens."""
        if amount < 0:
            return False
        self.allowances[(owner, spender)] = amount
        return True

    def _move(self, frm: Any, to: Any, amount: int) -> bool:
        if amount < 0 or self.balance_of(frm) < amount:
            return False
        fee = amount * self.transfer_fee_bps // BPS_DENOMINATOR
        self.balances[frm] = self.balance_of(frm) - amount
        self.balances[to] = self.balance_of(to) + amount - fee
        self.total_supply -= fee
        return True

    def transfer(self, sender: Any, to: Any, amount: int) -> bool:
        """Move ``amount`` from ``sender`` to ``to``; the fee, if any, is burned."""
        ok = self._move(sender, to, amount)
        if not ok:
            logger.debug("%s transfer of %d from %s refused", self.symbol, amount, sender)
        return ok

    def transfer_from(self, spender: Any, owner: Any, to: Any, amount: int) -> bool:
        """Move ``amount`` out of ``owner``'s balance using ``spender``'s allowance."""
        allowed = self.allowance(owner, spender)
        if allowed < amount:
            logger.debug("%s allowance of %s for %s is %d, needs %d", self.symbol, owner, spender, allowed, amount)
            return False
        if not self._move(owner, to, amount):
            logger.debug("%s transfer_from of %d out of %s refused", self.symbol, amount, owner)
            return False
        self.allowances[(owner, spender)] = allowed - amount
        return True

    def step(self):
        """Tokens are reactive; no internal logic on each step."""
        pass
