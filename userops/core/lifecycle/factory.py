"""
Wiring for the lifecycle manager.

Builds stores for the configured backend and hands the manager its
policy and chain table explicitly.
"""

import logging
from typing import Optional

from ...config import BundlerConfig, Settings, load_bundler_config, settings as default_settings
from ...logging_config import setup_logging
from .manager import LifecycleManager, LifecyclePolicy


logger = logging.getLogger(__name__)


def build_lifecycle_manager(
    settings: Optional[Settings] = None,
    bundler_config: Optional[BundlerConfig] = None,
) -> LifecycleManager:
    settings = settings or default_settings
    backend = settings.store_backend.lower()

    if backend == "convex":
        if not settings.has_convex:
            raise ValueError("store_backend=convex requires CONVEX_URL")
        from ...db.convex_client import ConvexClient
        from ...db.convex_store import ConvexEventStore, ConvexOperationStore, ConvexTransactionView

        client = ConvexClient(
            deployment_url=settings.convex_url,
            deploy_key=settings.convex_deploy_key,
            timeout=settings.convex_timeout_seconds,
        )
        operations = ConvexOperationStore(client)
        events = ConvexEventStore(client)
        transactions = ConvexTransactionView(client)
    elif backend == "memory":
        from ...db.memory import InMemoryEventStore, InMemoryOperationStore, InMemoryTransactionView

        operations = InMemoryOperationStore()
        events = InMemoryEventStore()
        transactions = InMemoryTransactionView()
    else:
        raise ValueError(f"Unknown store backend: {settings.store_backend}")

    return LifecycleManager(
        operations=operations,
        events=events,
        transactions=transactions,
        policy=LifecyclePolicy.from_settings(settings),
        bundler_config=bundler_config or load_bundler_config(),
    )


def bootstrap(settings: Optional[Settings] = None) -> LifecycleManager:
    """Process startup: configure logging, then build the manager."""
    settings = settings or default_settings
    setup_logging(settings.log_level)
    manager = build_lifecycle_manager(settings)
    logger.info(f"Lifecycle manager ready (backend={settings.store_backend})")
    return manager
