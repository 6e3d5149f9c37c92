"""
Tests for the Convex client and Convex-backed lifecycle stores.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from userops.core.lifecycle import (
    PersistenceUnavailable,
    TransactionStatus,
    UserOperationEvent,
    UserOperationRecord,
    UserOperationStatus,
)
from userops.db.convex_client import (
    ConvexAuthError,
    ConvexClient,
    ConvexMutationError,
    ConvexQueryError,
)
from userops.db.convex_store import (
    ConvexEventStore,
    ConvexOperationStore,
    ConvexTransactionView,
    event_to_convex,
    record_from_convex,
    record_to_convex,
)


SENDER = "0x1234567890123456789012345678901234567890"
CREATED = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def convex() -> MagicMock:
    client = MagicMock()
    client.query = AsyncMock(return_value=None)
    client.mutation = AsyncMock(return_value=None)
    return client


@pytest.fixture
def record() -> UserOperationRecord:
    return UserOperationRecord(
        chain_id=1,
        sender=SENDER,
        nonce_key=(1 << 100),
        nonce_value=42,
        user_op_hash="0xaa",
        entry_point="0xep",
        origin={"sender": SENDER, "nonce": "0x2a"},
        status=UserOperationStatus.DONE,
        tx_hash="0xtx",
        block_number=9,
        block_hash="0xblock",
        created_at=CREATED,
        revision=2,
    )


# =============================================================================
# Document mapping
# =============================================================================

class TestDocumentMapping:

    def test_nonce_fields_serialised_as_strings(self, record: UserOperationRecord):
        doc = record_to_convex(record)

        assert doc["userOpNonce"] == "42"
        assert doc["userOpNonceSort"] == "42".zfill(30)
        assert doc["userOpNonceKey"] == hex(1 << 100)
        assert doc["createdAt"] == int(CREATED.timestamp() * 1000)
        assert doc["status"] == "done"

    def test_document_restores_record(self, record: UserOperationRecord):
        restored = record_from_convex(record_to_convex(record))
        assert restored == record

    def test_missing_created_at_is_persistence_unavailable(self, record: UserOperationRecord):
        doc = record_to_convex(record)
        del doc["createdAt"]

        with pytest.raises(PersistenceUnavailable, match="createdAt"):
            record_from_convex(doc)


# =============================================================================
# Operation store
# =============================================================================

class TestConvexOperationStore:

    @pytest.mark.asyncio
    async def test_find_by_slot_missing(self, convex: MagicMock):
        store = ConvexOperationStore(convex)

        assert await store.find_by_slot(1, SENDER, 0, 7) is None
        convex.query.assert_awaited_once_with(
            "userOperations:getBySlot",
            {"chainId": 1, "userOpSender": SENDER, "userOpNonceKey": "0x0", "userOpNonce": "7"},
        )

    @pytest.mark.asyncio
    async def test_insert_if_absent_reports_conflict(self, convex: MagicMock, record: UserOperationRecord):
        convex.mutation.return_value = False
        store = ConvexOperationStore(convex)

        assert await store.insert_if_absent(record) is False
        name, args = convex.mutation.await_args.args
        assert name == "userOperations:insertIfAbsent"
        assert args["doc"]["recordId"] == record.id

    @pytest.mark.asyncio
    async def test_reset_sends_guard(self, convex: MagicMock, record: UserOperationRecord):
        store = ConvexOperationStore(convex)

        result = await store.reset_to_local(
            record.id, 2, user_op_hash="0xbb", entry_point="0xep", origin={}, created_at=CREATED
        )

        assert result is None
        _, args = convex.mutation.await_args.args
        assert args["expectedRevision"] == 2
        assert args["expectedStatus"] == "done"

    @pytest.mark.asyncio
    async def test_mark_pending_returns_count(self, convex: MagicMock):
        convex.mutation.return_value = 2
        store = ConvexOperationStore(convex)

        matched = await store.mark_pending([("a", 0), ("b", 1)], "0xtx")

        assert matched == 2
        _, args = convex.mutation.await_args.args
        assert args["refs"] == [{"recordId": "a", "revision": 0}, {"recordId": "b", "revision": 1}]
        assert args["expectedStatus"] == "local"

    @pytest.mark.asyncio
    async def test_mark_done_zero_matches(self, convex: MagicMock):
        store = ConvexOperationStore(convex)
        assert await store.mark_done(1, ["0xaa"], "0xtx", 1, "0xblock") == 0

    @pytest.mark.asyncio
    async def test_query_failure_is_persistence_unavailable(self, convex: MagicMock):
        convex.query.side_effect = ConvexQueryError("boom")
        store = ConvexOperationStore(convex)

        with pytest.raises(PersistenceUnavailable) as exc_info:
            await store.find_by_hash(1, "0xaa")

        assert isinstance(exc_info.value.__cause__, ConvexQueryError)

    @pytest.mark.asyncio
    async def test_mutation_failure_is_persistence_unavailable(self, convex: MagicMock):
        convex.mutation.side_effect = ConvexMutationError("boom")
        store = ConvexOperationStore(convex)

        with pytest.raises(PersistenceUnavailable):
            await store.delete_by_status(1, [UserOperationStatus.LOCAL])


class TestConvexEventStoreAndView:

    @pytest.mark.asyncio
    async def test_insert_returns_stored_event(self, convex: MagicMock):
        existing = UserOperationEvent(
            chain_id=1, user_operation_hash="0xaa", tx_hash="0x1", contract_address="0xep", topic="0xt"
        )
        convex.mutation.return_value = event_to_convex(existing)
        store = ConvexEventStore(convex)
        candidate = UserOperationEvent(
            chain_id=1, user_operation_hash="0xaa", tx_hash="0x2", contract_address="0xep", topic="0xt"
        )

        stored = await store.insert_if_absent(candidate)

        assert stored.id == existing.id
        assert stored.tx_hash == "0x1"

    @pytest.mark.asyncio
    async def test_insert_without_stored_document_raises(self, convex: MagicMock):
        store = ConvexEventStore(convex)
        candidate = UserOperationEvent(
            chain_id=1, user_operation_hash="0xaa", tx_hash="0x2", contract_address="0xep", topic="0xt"
        )

        with pytest.raises(PersistenceUnavailable, match="returned no document"):
            await store.insert_if_absent(candidate)

    @pytest.mark.asyncio
    async def test_transaction_view_parses_status(self, convex: MagicMock):
        convex.query.return_value = {"chainId": 1, "txHash": "0xtx", "status": "failed"}
        view = ConvexTransactionView(convex)

        transaction = await view.find_by_chain_and_hash(1, "0xtx")

        assert transaction.status == TransactionStatus.FAILED


# =============================================================================
# HTTP client
# =============================================================================

def make_client(handler) -> ConvexClient:
    client = ConvexClient(deployment_url="https://example.convex.cloud/", deploy_key="prod:key", timeout=5)
    client._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return client


class TestConvexClient:

    @pytest.mark.asyncio
    async def test_query_returns_value(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            return httpx.Response(200, json={"status": "success", "value": {"ok": True}})

        client = make_client(handler)
        try:
            value = await client.query("userOperations:getByHash", {"chainId": 1})
        finally:
            await client.close()

        assert value == {"ok": True}
        assert seen["url"] == "https://example.convex.cloud/api/query"

    @pytest.mark.asyncio
    async def test_error_payload_raises(self):
        client = make_client(
            lambda request: httpx.Response(200, json={"status": "error", "errorMessage": "nope"})
        )
        try:
            with pytest.raises(ConvexMutationError, match="nope"):
                await client.mutation("userOperations:markDone", {})
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_unauthorized_raises_auth_error(self):
        client = make_client(lambda request: httpx.Response(401, json={}))
        try:
            with pytest.raises(ConvexAuthError):
                await client.query("userOperations:listLocal", {"limit": 1})
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_server_error_raises_query_error(self):
        client = make_client(lambda request: httpx.Response(500, text="down"))
        try:
            with pytest.raises(ConvexQueryError):
                await client.query("userOperations:listLocal", {"limit": 1})
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_non_json_body_raises_query_error(self):
        client = make_client(lambda request: httpx.Response(200, text="<html>gateway</html>"))
        try:
            with pytest.raises(ConvexQueryError, match="Invalid JSON"):
                await client.query("userOperations:listLocal", {"limit": 1})
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_non_json_body_surfaces_as_persistence_unavailable(self):
        client = make_client(lambda request: httpx.Response(200, text="<html>gateway</html>"))
        try:
            with pytest.raises(PersistenceUnavailable):
                await ConvexEventStore(client).find(1, "0xabc")
        finally:
            await client.close()

    def test_authorization_header(self):
        client = ConvexClient(deployment_url="https://example.convex.cloud", deploy_key="prod:key")
        assert client.headers["Authorization"] == "Convex prod:key"
