"""Mongo-backed stores for chat logs, conversations and user conversation lists."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from bson import ObjectId
from bson.errors import InvalidId

from imchat.immodels.errors import NotFoundError, parse_object_id
from imchat.immodels.types import ChatLog, Conversation, Conversations

DEFAULT_CHAT_LOG_LIMIT = 100

_ZERO_ID = ObjectId(b"\x00" * 12)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _object_id_or_zero(value: str) -> ObjectId:
    try:
        return ObjectId(value) if isinstance(value, str) and len(value) == 24 else _ZERO_ID
    except InvalidId:
        return _ZERO_ID


def _open_collection(url: str, db: str, collection: str) -> Any:
    from pymongo import MongoClient

    return MongoClient(url)[db][collection]


class ChatLogModel:
    """Stores chat messages."""

    def __init__(self, collection: Any) -> None:
        self._collection = collection

    @classmethod
    def connect(cls, url: str, db: str, collection: str = "chat_log") -> ChatLogModel:
        """Open the model on a collection of the given server and database."""
        return cls(_open_collection(url, db, collection))

    def insert(self, data: ChatLog) -> None:
        """Store a new chat log."""
        self._collection.insert_one(data.to_document())

    def find_one(self, id: str) -> ChatLog:
        """The chat log with hexadecimal id ``id``."""
        oid = parse_object_id(id)
        doc = self._collection.find_one({"_id": oid})
        if doc is None:
            raise NotFoundError()
        return ChatLog.from_document(doc)

    def list_by_ids(self, msg_ids: list[str]) -> list[ChatLog]:
        """Chat logs with the given ids; malformed ids match nothing real."""
        ids = [_object_id_or_zero(msg_id) for msg_id in msg_ids]
        return [
            ChatLog.from_document(doc)
            for doc in self._collection.find({"_id": {"$in": ids}})
        ]

    def list_by_send_time(
        self,
        conversation_id: str,
        start_send_time: int,
        end_send_time: int,
        limit: int,
    ) -> list[ChatLog]:
        """Messages of a conversation, newest first.

        With a positive ``end_send_time`` the window is
        ``end_send_time < sendTime <= start_send_time``; otherwise it is
        ``sendTime < start_send_time``. A non-positive ``limit`` means 100.
        """
        if end_send_time > 0:
            send_time = {"$gt": end_send_time, "$lte": start_send_time}
        else:
            send_time = {"$lt": start_send_time}
        query = {"conversationId": conversation_id, "sendTime": send_time}
        cursor = self._collection.find(
            query,
            sort=[("sendTime", -1)],
            limit=limit if limit > 0 else DEFAULT_CHAT_LOG_LIMIT,
        )
        return [ChatLog.from_document(doc) for doc in cursor]

    def update(self, data: ChatLog) -> None:
        """Replace the stored chat log; stamps ``update_at``."""
        data.update_at = _now()
        self._collection.replace_one(
            {"_id": data.id if data.id is not None else _ZERO_ID}, data.to_document()
        )

    def update_make_read(self, id: ObjectId, read_records: bytes) -> None:
        """Overwrite the read-records bitmap of a chat log."""
        self._collection.update_one(
            {"_id": id}, {"$set": {"readRecords": bytes(read_records)}}
        )

    def delete(self, id: str) -> None:
        """Delete the chat log with hexadecimal id ``id``."""
        self._collection.delete_one({"_id": parse_object_id(id)})


class ConversationModel:
    """Stores conversations, looked up by conversation id."""

    def __init__(self, collection: Any) -> None:
        self._collection = collection

    @classmethod
    def connect(cls, url: str, db: str, collection: str = "conversation") -> ConversationModel:
        """Open the model on a collection of the given server and database."""
        return cls(_open_collection(url, db, collection))

    def insert(self, data: Conversation) -> None:
        """Store a conversation; one that already carries an id gets a fresh id and times."""
        if data.id is not None:
            now = _now()
            data.id = ObjectId()
            data.create_at = now
            data.update_at = now
        self._collection.insert_one(data.to_document())

    def find_one(self, conversation_id: str) -> Conversation:
        """The conversation with the given conversation id."""
        doc = self._collection.find_one({"conversationId": conversation_id})
        if doc is None:
            raise NotFoundError()
        return Conversation.from_document(doc)

    def update(self, data: Conversation) -> None:
        """Replace the stored conversation; stamps ``update_at``."""
        data.update_at = _now()
        self._collection.replace_one(
            {"_id": data.id if data.id is not None else _ZERO_ID}, data.to_document()
        )

    def delete(self, id: str) -> None:
        """Delete the conversation with hexadecimal document id ``id``."""
        self._collection.delete_one({"_id": parse_object_id(id)})

    def list_by_conversation_ids(self, ids: list[str]) -> list[Conversation]:
        """Conversations whose conversation id is among ``ids``."""
        return [
            Conversation.from_document(doc)
            for doc in self._collection.find({"conversationId": {"$in": list(ids)}})
        ]

    def update_msg(self, chat_log: ChatLog) -> None:
        """Record ``chat_log`` as the latest message and count it in the total."""
        self._collection.update_one(
            {"conversationId": chat_log.conversation_id},
            {"$inc": {"total": 1}, "$set": {"msg": chat_log.to_document()}},
        )


class ConversationsModel:
    """Stores each user's conversation list."""

    def __init__(self, collection: Any) -> None:
        self._collection = collection

    @classmethod
    def connect(
        cls, url: str, db: str, collection: str = "conversations"
    ) -> ConversationsModel:
        """Open the model on a collection of the given server and database."""
        return cls(_open_collection(url, db, collection))

    def insert(self, data: Conversations) -> None:
        """Store a list; one that already carries an id gets a fresh id and times."""
        if data.id is not None:
            now = _now()
            data.id = ObjectId()
            data.create_at = now
            data.update_at = now
        self._collection.insert_one(data.to_document())

    def find_one(self, id: str) -> Conversations:
        """The list with hexadecimal document id ``id``."""
        oid = parse_object_id(id)
        doc = self._collection.find_one({"_id": oid})
        if doc is None:
            raise NotFoundError()
        return Conversations.from_document(doc)

    def update(self, data: Conversations) -> None:
        """Upsert the list by document id; stamps ``update_at``."""
        data.update_at = _now()
        self._collection.update_one(
            {"_id": data.id if data.id is not None else _ZERO_ID},
            {"$set": data.to_document()},
            upsert=True,
        )

    def delete(self, id: str) -> None:
        """Delete the list with hexadecimal document id ``id``."""
        self._collection.delete_one({"_id": parse_object_id(id)})

    def find_by_user_id(self, uid: str) -> Conversations:
        """The conversation list of user ``uid``."""
        doc = self._collection.find_one({"userId": uid})
        if doc is None:
            raise NotFoundError()
        return Conversations.from_document(doc)