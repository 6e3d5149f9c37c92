"""
User Operation Lifecycle Module

Admission, replacement and settlement tracking for user operations,
with store contracts for the persistence backends.
"""

from .errors import (
    EntryPointNotSupported,
    InvalidNonce,
    LifecycleError,
    OperationNotReplaceable,
    PersistenceUnavailable,
    ReplacementTooSoon,
)
from .manager import LifecycleManager, LifecyclePolicy
from .models import (
    AdmissionResult,
    BundlingTransaction,
    TransactionStatus,
    UserOperationEvent,
    UserOperationRecord,
    UserOperationStatus,
)
from .nonce import normalize_address, split_nonce, validate_nonce_value
from .store import BundlingTransactionView, EventStore, OperationStore

__all__ = [
    # Manager
    "LifecycleManager",
    "LifecyclePolicy",
    # Models
    "AdmissionResult",
    "BundlingTransaction",
    "TransactionStatus",
    "UserOperationEvent",
    "UserOperationRecord",
    "UserOperationStatus",
    # Nonce
    "normalize_address",
    "split_nonce",
    "validate_nonce_value",
    # Store contracts
    "OperationStore",
    "EventStore",
    "BundlingTransactionView",
    # Errors
    "LifecycleError",
    "InvalidNonce",
    "OperationNotReplaceable",
    "ReplacementTooSoon",
    "EntryPointNotSupported",
    "PersistenceUnavailable",
]
