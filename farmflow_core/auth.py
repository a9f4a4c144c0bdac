"""
Capability checks for privileged ledger entry points.

A privileged call compares the caller against a stored identity and gets
back a tagged :class:`AuthResult`.  The engine turns ``UNAUTHORIZED`` into
an :class:`~farmflow_core.errors.UnauthorizedAccess` before touching any
state.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass
from enum import Enum


class AuthResult(Enum):
    OK = "ok"
    UNAUTHORIZED = "unauthorized"

    @property
    def ok(self) -> bool:
        return self is AuthResult.OK


@dataclass
class AuthorizedCaller:
    """A single identity allowed to invoke a guarded operation."""
    identity: str
    role: str = "owner"

    def check(self, caller: str) -> AuthResult:
        if not caller or not self.identity:
            return AuthResult.UNAUTHORIZED
        if hmac.compare_digest(caller.encode(), self.identity.encode()):
            return AuthResult.OK
        return AuthResult.UNAUTHORIZED

    def reassign(self, identity: str) -> None:
        if not identity:
            raise ValueError(f"{self.role} identity must not be empty")
        self.identity = identity
