"""Pytest fixtures and in-memory collaborators for the chat backend tests."""

import asyncio
import copy
import uuid
from datetime import datetime
from types import SimpleNamespace
from typing import Dict, List, Optional

import pytest
from pymongo import DESCENDING

from models import Conversation, ConversationInfo, Message
from services.context_service import ContextService
from services.document_service import DocumentService
from services.guardrail_service import GuardrailService
from services.query_rewrite_service import QueryRewriteService
from services.rag_service import RAGService
from utils.errors import DependencyFailureError, NotFoundError


def make_messages(count: int) -> List[Message]:
    """Alternating user/assistant messages numbered from 0."""
    return [
        Message(role="user" if i % 2 == 0 else "assistant", content=f"message {i}")
        for i in range(count)
    ]


def make_hit(score: float, text: str = "chunk", **payload) -> Dict:
    return {"id": str(uuid.uuid4()), "score": score, "payload": {"text": text, **payload}}


class FakeLLMService:
    """Scripted LLM: fixed stream tokens and a queue of non-streaming replies."""

    def __init__(self, tokens=None, replies=None, stream_error: Optional[Exception] = None,
                 fail_after: Optional[int] = None):
        self.tokens = tokens if tokens is not None else ["The ", "cancellation ", "policy ", "is 30 days."]
        self.replies = list(replies or [])
        self.stream_error = stream_error
        self.fail_after = fail_after
        self.prompts: List[str] = []
        self.prompt_kwargs: List[Dict] = []
        self.streamed_messages: List[List[Dict]] = []
        self.stream_closed = False
        self.current_model = "fake-model"

    async def generate_from_prompt(self, user_prompt, system_prompt=None, temperature=None, max_tokens=None):
        self.prompts.append(user_prompt)
        self.prompt_kwargs.append({"temperature": temperature, "max_tokens": max_tokens})
        if not self.replies:
            return "summary"
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def stream_generate(self, messages, temperature=None, max_tokens=None):
        self.streamed_messages.append(messages)
        if self.stream_error is not None and self.fail_after is None:
            raise self.stream_error
        try:
            for i, token in enumerate(self.tokens):
                if self.fail_after is not None and i == self.fail_after:
                    raise self.stream_error or DependencyFailureError("llm", "stream interrupted")
                await asyncio.sleep(0)
                yield token
        finally:
            self.stream_closed = True


class FakeEmbeddingService:
    def __init__(self, vector=None, error: Optional[Exception] = None):
        self.vector = vector or [0.1, 0.2, 0.3]
        self.error = error
        self.calls: List[Dict] = []

    async def embed_query(self, query):
        self.calls.append({"kind": "query", "texts": [query]})
        if self.error:
            raise self.error
        return list(self.vector)

    async def embed_documents(self, texts, batch_size=64):
        self.calls.append({"kind": "document", "texts": list(texts)})
        if self.error:
            raise self.error
        return [list(self.vector) for _ in texts]


class FakeVectorStore:
    """Partition -> list of hits. Search honours equality filters on the payload."""

    def __init__(self, hits: Optional[Dict[str, List[Dict]]] = None, error: Optional[Exception] = None):
        self.hits = hits or {}
        self.error = error
        self.searches: List[Dict] = []
        self.upserts: List[Dict] = []
        self.deletes: List[Dict] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def search(self, partition, vector, limit=5, filter=None):
        self.searches.append({"partition": partition, "limit": limit, "filter": filter})
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0.01)
            if self.error:
                raise self.error
            results = [
                hit for hit in self.hits.get(partition, [])
                if not filter or all(hit["payload"].get(k) == v for k, v in filter.items())
            ]
            return sorted(results, key=lambda hit: hit["score"], reverse=True)[:limit]
        finally:
            self.in_flight -= 1

    async def upsert(self, partition, points):
        self.upserts.append({"partition": partition, "points": points})
        self.hits.setdefault(partition, []).extend(
            {"id": p["id"], "score": 1.0, "payload": p["payload"]} for p in points
        )

    async def delete(self, partition, ids=None, filter=None):
        self.deletes.append({"partition": partition, "ids": ids, "filter": filter})
        before = self.hits.get(partition, [])
        if ids is not None:
            kept = [hit for hit in before if hit["id"] not in ids]
        else:
            kept = [
                hit for hit in before
                if not all(hit["payload"].get(k) == v for k, v in (filter or {}).items())
            ]
        self.hits[partition] = kept
        return len(before) - len(kept)


class FakeCursor:
    def __init__(self, docs):
        self.docs = docs

    def sort(self, key, direction):
        self.docs = sorted(self.docs, key=lambda doc: doc[key], reverse=direction == DESCENDING)
        return self

    def limit(self, count):
        self.docs = self.docs[:count]
        return self

    async def to_list(self, length=None):
        return self.docs[:length] if length else list(self.docs)


class FakeCollection:
    """Just enough of a motor collection for equality queries and $set updates."""

    def __init__(self):
        self.docs: List[Dict] = []

    @staticmethod
    def _matches(doc, query):
        return all(doc.get(k) == v for k, v in query.items())

    @staticmethod
    def _project(doc, projection):
        if not projection:
            return copy.deepcopy(doc)
        return {k: copy.deepcopy(v) for k, v in doc.items() if projection.get(k, 1)}

    async def insert_one(self, doc):
        self.docs.append(copy.deepcopy(doc))

    async def find_one(self, query, projection=None):
        for doc in self.docs:
            if self._matches(doc, query):
                return self._project(doc, projection)
        return None

    def find(self, query, projection=None):
        return FakeCursor([self._project(doc, projection) for doc in self.docs if self._matches(doc, query)])

    async def update_one(self, query, update):
        for doc in self.docs:
            if self._matches(doc, query):
                doc.update(copy.deepcopy(update.get("$set", {})))
                return SimpleNamespace(matched_count=1, modified_count=1)
        return SimpleNamespace(matched_count=0, modified_count=0)

    async def delete_one(self, query):
        for i, doc in enumerate(self.docs):
            if self._matches(doc, query):
                del self.docs[i]
                return SimpleNamespace(deleted_count=1)
        return SimpleNamespace(deleted_count=0)


class FakeConversationService:
    """In-memory conversation store with the same contract as ConversationService."""

    def __init__(self):
        self.conversations: Dict[str, Conversation] = {}
        self.fail_append: Optional[Exception] = None
        self.append_calls = 0

    def seed(self, user_id: str, messages: List[Message], summary: str = "",
             summary_up_to_index: int = 0) -> Conversation:
        conversation = Conversation(
            conversation_id=str(uuid.uuid4()),
            user_id=user_id,
            title="seeded",
            messages=messages,
            message_count=len(messages),
            summary=summary,
            summary_up_to_index=summary_up_to_index,
        )
        self.conversations[conversation.conversation_id] = conversation
        return conversation

    async def create_conversation(self, user_id, title=None, messages=None):
        if self.fail_append:
            raise self.fail_append
        messages = list(messages or [])
        conversation = Conversation(
            conversation_id=str(uuid.uuid4()),
            user_id=str(user_id),
            title=title,
            messages=messages,
            message_count=len(messages),
        )
        self.conversations[conversation.conversation_id] = conversation
        return conversation

    async def find_conversation(self, conversation_id, user_id):
        conversation = self.conversations.get(conversation_id)
        if conversation is None or conversation.user_id != str(user_id) or not conversation.is_active:
            return None
        return conversation.model_copy(deep=True)

    async def get_conversation(self, conversation_id):
        conversation = self.conversations.get(conversation_id)
        return conversation.model_copy(deep=True) if conversation else None

    async def list_conversations(self, user_id, limit=50):
        return [
            ConversationInfo(
                conversation_id=c.conversation_id,
                title=c.title,
                message_count=c.message_count,
                created_at=c.created_at,
                updated_at=c.updated_at,
            )
            for c in self.conversations.values()
            if c.user_id == str(user_id) and c.is_active
        ][:limit]

    async def add_messages(self, conversation_id, messages):
        self.append_calls += 1
        if self.fail_append:
            raise self.fail_append
        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found")
        self.conversations[conversation_id] = conversation.model_copy(update={
            "messages": conversation.messages + list(messages),
            "message_count": conversation.message_count + len(messages),
            "version": conversation.version + 1,
            "updated_at": datetime.now(),
        })

    async def update_summary(self, conversation_id, summary, summary_up_to_index, expected_up_to_index):
        if summary_up_to_index < expected_up_to_index:
            raise ValueError("summary_up_to_index must never decrease")
        conversation = self.conversations[conversation_id]
        if conversation.summary_up_to_index != expected_up_to_index:
            return False
        self.conversations[conversation_id] = conversation.model_copy(update={
            "summary": summary,
            "summary_up_to_index": summary_up_to_index,
            "version": conversation.version + 1,
        })
        return True

    async def deactivate_conversation(self, conversation_id, user_id):
        conversation = self.conversations.get(conversation_id)
        if conversation is None or conversation.user_id != str(user_id) or not conversation.is_active:
            raise NotFoundError("Conversation not found")
        self.conversations[conversation_id] = conversation.model_copy(update={"is_active": False})


@pytest.fixture
def llm():
    return FakeLLMService()


@pytest.fixture
def embedding():
    return FakeEmbeddingService()


@pytest.fixture
def vector_store():
    return FakeVectorStore()


@pytest.fixture
def conversations():
    return FakeConversationService()


@pytest.fixture
def guardrail():
    return GuardrailService(max_input_length=10000)


@pytest.fixture
def context_service(conversations, llm):
    return ContextService(conversation_service=conversations, llm_service=llm)


@pytest.fixture
def rag_service(embedding, vector_store):
    return RAGService(
        embedding_service=embedding,
        vector_store=vector_store,
        user_partition="user_knowledge",
        platform_partition="platform_knowledge",
    )


@pytest.fixture
def rewrite_service(llm):
    return QueryRewriteService(llm_service=llm)


@pytest.fixture
def document_db():
    return SimpleNamespace(documents=FakeCollection())


@pytest.fixture
def documents(embedding, vector_store, guardrail, document_db):
    return DocumentService(
        embedding_service=embedding,
        vector_store=vector_store,
        guardrail_service=guardrail,
        db=document_db,
        user_partition="user_knowledge",
        platform_partition="platform_knowledge",
    )
