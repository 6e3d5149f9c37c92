from .convex_client import ConvexClient, ConvexError
from .convex_store import ConvexEventStore, ConvexOperationStore, ConvexTransactionView
from .memory import InMemoryEventStore, InMemoryOperationStore, InMemoryTransactionView

__all__ = [
    "ConvexClient",
    "ConvexError",
    "ConvexOperationStore",
    "ConvexEventStore",
    "ConvexTransactionView",
    "InMemoryOperationStore",
    "InMemoryEventStore",
    "InMemoryTransactionView",
]
