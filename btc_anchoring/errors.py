"""Error types raised by the anchoring engine.

Only :class:`btc_anchoring.storage.StorageError` is fatal to a block commit.
Everything defined here describes a recoverable condition: the current
anchoring step is skipped and the next block retries.
"""

from __future__ import annotations


class AnchoringError(RuntimeError):
    """Base class for recoverable anchoring failures."""


class InsufficientFunds(AnchoringError):
    """The spent outputs cannot cover the fee and a non-dust change output."""

    def __init__(self, available: int, fee: int, minimum: int) -> None:
        super().__init__(
            f"Insufficient funds: available {available} sat, fee {fee} sat, "
            f"change would fall below {minimum} sat"
        )
        self.available = available
        self.fee = fee
        self.minimum = minimum


class NoPriorAnchor(AnchoringError):
    """Neither an agreed LECT nor a usable funding transaction exists."""


class TransitionPending(AnchoringError):
    """A regular proposal was requested while the wallet is being switched."""


class MessageError(ValueError):
    """Raised when a protocol transaction cannot be decoded."""
