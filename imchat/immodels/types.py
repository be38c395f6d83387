"""Documents stored for chat logs and conversations."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from bson import ObjectId


def _put_times(doc: dict[str, Any], update_at: datetime | None, create_at: datetime | None) -> None:
    if update_at is not None:
        doc["updateAt"] = update_at
    if create_at is not None:
        doc["createAt"] = create_at


@dataclass
class ChatLog:
    """One chat message as stored in the ``chat_log`` collection."""

    id: ObjectId | None = None
    conversation_id: str = ""
    send_id: str = ""
    recv_id: str = ""
    msg_from: int = 0
    chat_type: int = 0
    msg_type: int = 0
    msg_content: str = ""
    send_time: int = 0
    status: int = 0
    read_records: bytes = b""
    update_at: datetime | None = None
    create_at: datetime | None = None

    def to_document(self) -> dict[str, Any]:
        """The document form; an unset id and unset times are omitted."""
        doc: dict[str, Any] = {}
        if self.id is not None:
            doc["_id"] = self.id
        doc.update(
            conversationId=self.conversation_id,
            sendId=self.send_id,
            recvId=self.recv_id,
            msgFrom=self.msg_from,
            chatType=self.chat_type,
            msgType=self.msg_type,
            msgContent=self.msg_content,
            sendTime=self.send_time,
            status=self.status,
            readRecords=bytes(self.read_records),
        )
        _put_times(doc, self.update_at, self.create_at)
        return doc

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> ChatLog:
        """Build a chat log from a stored document."""
        return cls(
            id=doc.get("_id"),
            conversation_id=doc.get("conversationId") or "",
            send_id=doc.get("sendId") or "",
            recv_id=doc.get("recvId") or "",
            msg_from=doc.get("msgFrom") or 0,
            chat_type=doc.get("chatType") or 0,
            msg_type=doc.get("msgType") or 0,
            msg_content=doc.get("msgContent") or "",
            send_time=doc.get("sendTime") or 0,
            status=doc.get("status") or 0,
            read_records=bytes(doc.get("readRecords") or b""),
            update_at=doc.get("updateAt"),
            create_at=doc.get("createAt"),
        )


@dataclass
class Conversation:
    """A conversation: its id, type, message total and latest message."""

    id: ObjectId | None = None
    conversation_id: str = ""
    chat_type: int = 0
    is_show: bool = False
    total: int = 0
    seq: int = 0
    msg: ChatLog | None = None
    update_at: datetime | None = None
    create_at: datetime | None = None

    def to_document(self) -> dict[str, Any]:
        """The document form; empty fields other than ``seq`` are omitted."""
        doc: dict[str, Any] = {}
        if self.id is not None:
            doc["_id"] = self.id
        if self.conversation_id:
            doc["conversationId"] = self.conversation_id
        if self.chat_type:
            doc["chatType"] = self.chat_type
        if self.is_show:
            doc["isShow"] = self.is_show
        if self.total:
            doc["total"] = self.total
        doc["seq"] = self.seq
        if self.msg is not None:
            doc["msg"] = self.msg.to_document()
        _put_times(doc, self.update_at, self.create_at)
        return doc

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> Conversation:
        """Build a conversation from a stored document."""
        msg = doc.get("msg")
        return cls(
            id=doc.get("_id"),
            conversation_id=doc.get("conversationId") or "",
            chat_type=doc.get("chatType") or 0,
            is_show=bool(doc.get("isShow", False)),
            total=doc.get("total") or 0,
            seq=doc.get("seq") or 0,
            msg=ChatLog.from_document(msg) if msg is not None else None,
            update_at=doc.get("updateAt"),
            create_at=doc.get("createAt"),
        )


@dataclass
class Conversations:
    """The conversation list of one user, keyed by conversation id."""

    id: ObjectId | None = None
    user_id: str = ""
    conversation_list: dict[str, Conversation] = field(default_factory=dict)
    update_at: datetime | None = None
    create_at: datetime | None = None

    def to_document(self) -> dict[str, Any]:
        """The document form; an unset id and unset times are omitted."""
        doc: dict[str, Any] = {}
        if self.id is not None:
            doc["_id"] = self.id
        doc["userId"] = self.user_id
        doc["conversationList"] = {
            key: conversation.to_document()
            for key, conversation in self.conversation_list.items()
        }
        _put_times(doc, self.update_at, self.create_at)
        return doc

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> Conversations:
        """Build a user's conversation list from a stored document."""
        entries = doc.get("conversationList") or {}
        return cls(
            id=doc.get("_id"),
            user_id=doc.get("userId") or "",
            conversation_list={
                key: Conversation.from_document(value) for key, value in entries.items()
            },
            update_at=doc.get("updateAt"),
            create_at=doc.get("createAt"),
        )