"""Chat log and conversation services behind the IM RPC interface."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

from imchat.immodels.errors import NotFoundError
from imchat.immodels.models import ChatLogModel, ConversationModel, ConversationsModel
from imchat.immodels.types import ChatLog, Conversation

_ZERO_HEX = "0" * 24


class DBError(RuntimeError):
    """A storage operation behind a service call failed."""

    def __init__(self, message: str = "database error") -> None:
        super().__init__(message)


@dataclass
class ChatLogItem:
    """A chat message as returned to callers."""

    id: str = ""
    conversation_id: str = ""
    send_id: str = ""
    recv_id: str = ""
    msg_type: int = 0
    msg_content: str = ""
    chat_type: int = 0
    send_time: int = 0

    @classmethod
    def from_chat_log(cls, chat_log: ChatLog) -> ChatLogItem:
        """Build the reply form of a stored chat log."""
        return cls(
            id=str(chat_log.id) if chat_log.id is not None else _ZERO_HEX,
            conversation_id=chat_log.conversation_id,
            send_id=chat_log.send_id,
            recv_id=chat_log.recv_id,
            msg_type=chat_log.msg_type,
            msg_content=chat_log.msg_content,
            chat_type=chat_log.chat_type,
            send_time=chat_log.send_time,
        )


@dataclass
class ConversationItem:
    """A conversation entry in a user's list as seen by callers."""

    conversation_id: str = ""
    chat_type: int = 0
    target_id: str = ""
    is_show: bool = False
    seq: int = 0
    read: int = 0
    total: int = 0
    to_read: int = 0

    @classmethod
    def from_conversation(cls, conversation: Conversation) -> ConversationItem:
        """Build the reply form of a stored conversation entry."""
        return cls(
            conversation_id=conversation.conversation_id,
            chat_type=conversation.chat_type,
            is_show=conversation.is_show,
            seq=conversation.seq,
            total=conversation.total,
        )


@dataclass
class GetChatLogRequest:
    """Query for chat logs: one message by id, or a time window of a conversation."""

    msg_id: str = ""
    conversation_id: str = ""
    start_send_time: int = 0
    end_send_time: int = 0
    count: int = 0


@dataclass
class ConversationsResponse:
    """A user's conversation list with unread counts worked out."""

    user_id: str = ""
    conversation_list: dict[str, ConversationItem] = field(default_factory=dict)


class ImService:
    """Serves chat history and per-user conversation lists."""

    def __init__(
        self,
        chat_log_model: ChatLogModel,
        conversation_model: ConversationModel,
        conversations_model: ConversationsModel,
    ) -> None:
        self.chat_log_model = chat_log_model
        self.conversation_model = conversation_model
        self.conversations_model = conversations_model

    def get_chat_log(self, request: GetChatLogRequest) -> list[ChatLogItem]:
        """One message when ``msg_id`` is set, otherwise a window of a conversation."""
        if request.msg_id:
            try:
                chat_log = self.chat_log_model.find_one(request.msg_id)
            except Exception as exc:
                raise DBError(
                    f"find chatlog by msgId err {exc}, req {request.msg_id}"
                ) from exc
            return [ChatLogItem.from_chat_log(chat_log)]

        try:
            data = self.chat_log_model.list_by_send_time(
                request.conversation_id,
                request.start_send_time,
                request.end_send_time,
                request.count,
            )
        except Exception as exc:
            raise DBError(f"ListBySendTime err {exc}, req {request}") from exc
        return [ChatLogItem.from_chat_log(datum) for datum in data]

    def get_conversations(self, user_id: str) -> ConversationsResponse:
        """The user's conversations, marking those with messages not yet read."""
        try:
            data = self.conversations_model.find_by_user_id(user_id)
        except NotFoundError:
            return ConversationsResponse()
        except Exception as exc:
            raise DBError(
                f"ConversationsModel.FindByUserId err {exc}, req {user_id}"
            ) from exc

        res = ConversationsResponse(
            user_id=data.user_id,
            conversation_list={
                key: ConversationItem.from_conversation(conversation)
                for key, conversation in data.conversation_list.items()
            },
        )

        ids = [conversation.conversation_id for conversation in data.conversation_list.values()]
        try:
            conversations = self.conversation_model.list_by_conversation_ids(ids)
        except Exception as exc:
            raise DBError(
                f"ConversationModel.ListByConversationIds err {exc}, req {ids}"
            ) from exc

        for conversation in conversations:
            item = res.conversation_list.get(conversation.conversation_id)
            if item is None:
                continue
            seen = item.total
            if seen < conversation.total:
                item.total = conversation.total
                item.to_read = conversation.total - seen
                item.is_show = True
        return res

    def put_conversations(
        self, user_id: str, conversation_list: Mapping[str, ConversationItem]
    ) -> None:
        """Merge the given entries into the user's list, adding ``read`` to totals."""
        try:
            data = self.conversations_model.find_by_user_id(user_id)
        except Exception as exc:
            raise DBError(
                f"ConversationsModel.FindByUserId err {exc}, req {user_id}"
            ) from exc

        if data.conversation_list is None:
            data.conversation_list = {}

        for key, conversation in conversation_list.items():
            existing = data.conversation_list.get(key)
            old_total = existing.total if existing is not None else 0
            data.conversation_list[key] = Conversation(
                conversation_id=conversation.conversation_id,
                chat_type=conversation.chat_type,
                is_show=conversation.is_show,
                total=conversation.read + old_total,
                seq=conversation.seq,
            )

        try:
            self.conversations_model.update(data)
        except Exception as exc:
            raise DBError(f"ConversationsModel.Update err {exc}, req {data}") from exc