"""
Lifecycle Errors

Rejections raised by admission checks before any write, plus the wrapper
for persistence collaborator failures. Codes follow the JSON-RPC error
codes the bundler RPC surface reports to clients.
"""

from typing import Any, Dict, Optional


class LifecycleError(Exception):
    """Base class for user operation lifecycle errors."""

    code: int = -32603

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.context = context or {}


class InvalidNonce(LifecycleError):
    """Nonce value does not fit the stored decimal representation."""

    code = -32608

    def __init__(self, nonce_value: int, max_digits: int):
        super().__init__(
            f"Nonce value {nonce_value} exceeds {max_digits} decimal digits",
            context={"nonceValue": str(nonce_value), "maxDigits": max_digits},
        )


class OperationNotReplaceable(LifecycleError):
    """The nonce slot is held by an operation that has not settled."""

    code = -32607

    def __init__(self, user_op_hash: str, status: str, message: Optional[str] = None):
        super().__init__(
            message or f"Nonce slot is held by user operation {user_op_hash} ({status})",
            context={"userOpHash": user_op_hash, "status": status},
        )


class ReplacementTooSoon(LifecycleError):
    """The settled operation is too recent to be replaced."""

    code = -32004

    def __init__(self, user_op_hash: str, age_seconds: float, window_seconds: float):
        super().__init__(
            f"User operation {user_op_hash} settled {int(age_seconds)}s ago; "
            f"replacement allowed after {int(window_seconds)}s",
            context={
                "userOpHash": user_op_hash,
                "ageSeconds": int(age_seconds),
                "windowSeconds": int(window_seconds),
            },
        )


class EntryPointNotSupported(LifecycleError):
    """The entry point is not configured for the chain."""

    code = -32602

    def __init__(self, chain_id: int, entry_point: str):
        super().__init__(
            f"Entry point {entry_point} is not supported on chain {chain_id}",
            context={"chainId": chain_id, "entryPoint": entry_point},
        )


class PersistenceUnavailable(LifecycleError):
    """A store backend failed; nothing is assumed committed."""

    code = -32603
