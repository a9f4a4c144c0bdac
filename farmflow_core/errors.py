"""
Error taxonomy for FarmFlow.

Every rejected ledger call raises a :class:`FarmError` subclass whose
``code`` is stable and safe to surface to API clients.  Validation always
runs before mutation, and the engine rolls back on any exception, so a
raised error means no state changed.
"""

from __future__ import annotations


class FarmError(Exception):
    """Base class for all ledger rejections."""

    code: str = "FarmError"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class InvalidRewardData(FarmError, ValueError):
    """Reward asset and reward rate lists are inconsistent."""

    code = "InvalidRewardData"


class UnauthorizedAccess(FarmError, PermissionError):
    """Caller lacks the capability required by the entry point."""

    code = "UnauthorizedAccess"


class InsufficientBalance(FarmError, ValueError):
    """Withdraw requested more than the position holds."""

    code = "InsufficientBalance"


class InvalidAmount(FarmError, ValueError):
    code = "InvalidAmount"


class InvalidAddress(FarmError, ValueError):
    code = "InvalidAddress"


class UnknownPool(FarmError, LookupError):
    code = "UnknownPool"


class AssetError(FarmError):
    """A token collaborator refused a transfer; aborts the whole call."""

    code = "AssetError"

    def __init__(self, code: str, message: str = "") -> None:
        self.code = code
        super().__init__(message or code)


class InvariantViolation(FarmError):
    code = "InvariantViolation"
