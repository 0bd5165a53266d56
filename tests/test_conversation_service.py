"""Tests for the MongoDB conversation store (collection mocked)."""

from datetime import datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo.errors import PyMongoError

from models import Message
from services.conversation_service import ConversationService
from utils.errors import DependencyFailureError, NotFoundError


@pytest.fixture
def collection():
    collection = MagicMock()
    collection.insert_one = AsyncMock()
    collection.find_one = AsyncMock(return_value=None)
    collection.update_one = AsyncMock(return_value=SimpleNamespace(matched_count=1, modified_count=1))
    return collection


@pytest.fixture
def service(collection):
    return ConversationService(db=SimpleNamespace(conversations=collection))


class TestConversationService:
    async def test_create_with_initial_messages_is_single_insert(self, service, collection):
        messages = [Message(role="user", content="q"), Message(role="assistant", content="a")]
        conversation = await service.create_conversation("u1", title="q", messages=messages)

        collection.insert_one.assert_awaited_once()
        doc = collection.insert_one.await_args.args[0]
        assert doc["user_id"] == "u1"
        assert [m["role"] for m in doc["messages"]] == ["user", "assistant"]
        assert doc["message_count"] == 2
        assert doc["summary_up_to_index"] == 0
        assert conversation.conversation_id == doc["conversation_id"]

    async def test_find_is_tenant_scoped(self, service, collection):
        await service.find_conversation("c1", "u1")
        query = collection.find_one.await_args.args[0]
        assert query == {"conversation_id": "c1", "user_id": "u1", "is_active": True}

    async def test_find_parses_document(self, service, collection):
        now = datetime.now()
        collection.find_one.return_value = {
            "_id": "mongo-id",
            "conversation_id": "c1",
            "user_id": "u1",
            "messages": [{"role": "user", "content": "hi", "timestamp": now}],
            "summary": "",
            "summary_up_to_index": 0,
            "created_at": now,
            "updated_at": now,
        }
        conversation = await service.find_conversation("c1", "u1")
        assert conversation.messages[0].content == "hi"

    async def test_add_messages_is_one_atomic_push(self, service, collection):
        messages = [Message(role="user", content="q"), Message(role="assistant", content="a")]
        await service.add_messages("c1", messages)

        collection.update_one.assert_awaited_once()
        query, update = collection.update_one.await_args.args
        assert query == {"conversation_id": "c1"}
        assert len(update["$push"]["messages"]["$each"]) == 2
        assert update["$inc"] == {"message_count": 2, "version": 1}

    async def test_add_messages_unknown_conversation(self, service, collection):
        collection.update_one.return_value = SimpleNamespace(matched_count=0, modified_count=0)
        with pytest.raises(NotFoundError):
            await service.add_messages("missing", [Message(role="user", content="q")])

    async def test_store_errors_are_dependency_failures(self, service, collection):
        collection.update_one.side_effect = PyMongoError("primary stepped down")
        with pytest.raises(DependencyFailureError):
            await service.add_messages("c1", [Message(role="user", content="q")])

    async def test_update_summary_compare_and_set(self, service, collection):
        assert await service.update_summary("c1", "s", 21, expected_up_to_index=0) is True
        query, update = collection.update_one.await_args.args
        assert query["summary_up_to_index"] == 0
        assert update["$set"]["summary_up_to_index"] == 21

    async def test_update_summary_conflict(self, service, collection):
        collection.update_one.return_value = SimpleNamespace(matched_count=0, modified_count=0)
        assert await service.update_summary("c1", "s", 21, expected_up_to_index=0) is False

    async def test_update_summary_never_decreases(self, service, collection):
        with pytest.raises(ValueError):
            await service.update_summary("c1", "s", 5, expected_up_to_index=10)
        collection.update_one.assert_not_awaited()

    async def test_deactivate_unknown_conversation(self, service, collection):
        collection.update_one.return_value = SimpleNamespace(matched_count=0, modified_count=0)
        with pytest.raises(NotFoundError):
            await service.deactivate_conversation("c1", "u1")
