import logging

import pytest
import structlog

from userops.config import Settings
from userops.core.lifecycle.factory import bootstrap
from userops.db.memory import InMemoryOperationStore
from userops.logging_config import (
    SERVICE_NAME,
    add_service_name,
    lifecycle_log_context,
    setup_logging,
)


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


def test_setup_logging_routes_stdlib_through_structlog(restore_root_logger):
    setup_logging("DEBUG")

    root = restore_root_logger
    assert root.level == logging.DEBUG
    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0].formatter, structlog.stdlib.ProcessorFormatter)
    assert logging.getLogger("httpx").level == logging.WARNING


def test_setup_logging_unknown_level_falls_back_to_info(restore_root_logger):
    setup_logging("chatty")
    assert restore_root_logger.level == logging.INFO


def test_stdlib_record_rendered_with_lifecycle_context(restore_root_logger, capsys):
    setup_logging("INFO")

    with lifecycle_log_context(100, user_op_hash="0xaa", tx_hash=None):
        logging.getLogger("userops.test").info("admitted")

    line = capsys.readouterr().out.strip().splitlines()[-1]
    assert '"chain_id": 100' in line
    assert '"user_op_hash": "0xaa"' in line
    assert f'"service": "{SERVICE_NAME}"' in line
    assert "tx_hash" not in line


def test_lifecycle_log_context_is_unbound_on_exit():
    with lifecycle_log_context(1, user_op_hash="0xaa"):
        assert structlog.contextvars.get_contextvars()["chain_id"] == 1

    assert "chain_id" not in structlog.contextvars.get_contextvars()


def test_service_name_does_not_override_explicit_value():
    event = add_service_name(None, "info", {"event": "x", "service": "relay"})
    assert event["service"] == "relay"


def test_bootstrap_configures_logging_and_builds_manager(restore_root_logger):
    manager = bootstrap(Settings(store_backend="memory", log_level="WARNING"))

    assert restore_root_logger.level == logging.WARNING
    assert isinstance(restore_root_logger.handlers[0].formatter, structlog.stdlib.ProcessorFormatter)
    assert isinstance(manager.operations, InMemoryOperationStore)
