class AMMError(Exception):
    """Base class for every failure raised by the pool ledger."""


class InsufficientAmount(AMMError):
    """A required amount argument was zero."""


class InsufficientInputAmount(InsufficientAmount):
    """A swap was requested with no input."""


class InsufficientLiquidity(AMMError):
    """The referenced pool has no reserve on the relevant side, or the caller lacks shares."""


class InsufficientLiquidityMinted(AMMError):
    """A deposit computed to zero shares."""


class InsufficientLiquidityBurned(AMMError):
    """A withdrawal burned zero shares."""


class SlippageError(AMMError):
    """A computed amount fell below the caller's minimum."""


class InsufficientAAmount(SlippageError):
    pass


class InsufficientBAmount(SlippageError):
    pass


class InsufficientOutputAmount(SlippageError):
    pass


class LogicError(AMMError):
    """An internal consistency check failed."""


class NoReserves(AMMError):
    """A price was requested from an empty pool."""


class PairNotFound(AMMError):
    """The pair was never created or seeded."""


class IdenticalAssets(AMMError):
    """Both sides of a pair refer to the same asset."""


class UnknownToken(AMMError):
    """The asset identifier has no custody service registered with the ledger."""


class TransferFailed(AMMError):
    """The custody service refused a transfer."""
