import copy
from types import SimpleNamespace

import pytest
from bson import ObjectId

from imchat.immodels.errors import InvalidObjectIdError, NotFoundError
from imchat.immodels.models import (
    DEFAULT_CHAT_LOG_LIMIT,
    ChatLogModel,
    ConversationModel,
    ConversationsModel,
)
from imchat.immodels.types import ChatLog, Conversation, Conversations

_MISSING = object()


def _cond_ok(value, op, arg):
    if op == "$in":
        return value in arg
    if value is _MISSING:
        return False
    if op == "$gt":
        return value > arg
    if op == "$lte":
        return value <= arg
    if op == "$lt":
        return value < arg
    raise AssertionError(f"unsupported operator {op}")


def _is_operator_dict(cond):
    return isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond)


def _matches(doc, query):
    for key, cond in query.items():
        value = doc.get(key, _MISSING)
        if _is_operator_dict(cond):
            if not all(_cond_ok(value, op, arg) for op, arg in cond.items()):
                return False
        elif value != cond:
            return False
    return True


class FakeCollection:
    def __init__(self):
        self.docs = []

    def insert_one(self, doc):
        stored = copy.deepcopy(doc)
        stored.setdefault("_id", ObjectId())
        self.docs.append(stored)
        return SimpleNamespace(inserted_id=stored["_id"])

    def find_one(self, query):
        for doc in self.docs:
            if _matches(doc, query):
                return copy.deepcopy(doc)
        return None

    def find(self, query, sort=None, limit=0):
        results = [copy.deepcopy(d) for d in self.docs if _matches(d, query)]
        for key, direction in reversed(sort or []):
            results.sort(key=lambda d: d[key], reverse=direction < 0)
        return results[:limit] if limit > 0 else results

    def replace_one(self, query, replacement):
        for index, doc in enumerate(self.docs):
            if _matches(doc, query):
                new = copy.deepcopy(replacement)
                new["_id"] = doc["_id"]
                self.docs[index] = new
                return

    def update_one(self, query, update, upsert=False):
        target = next((d for d in self.docs if _matches(d, query)), None)
        if target is None:
            if not upsert:
                return
            target = {k: v for k, v in query.items() if not _is_operator_dict(v)}
            self.docs.append(target)
        for key, value in update.get("$set", {}).items():
            target[key] = copy.deepcopy(value)
        for key, value in update.get("$inc", {}).items():
            target[key] = target.get(key, 0) + value

    def delete_one(self, query):
        for index, doc in enumerate(self.docs):
            if _matches(doc, query):
                del self.docs[index]
                return


@pytest.fixture
def chat_logs():
    return ChatLogModel(FakeCollection())


@pytest.fixture
def conversation_model():
    return ConversationModel(FakeCollection())


@pytest.fixture
def conversations_model():
    return ConversationsModel(FakeCollection())


def _fill(model, conversation_id, times):
    for t in times:
        model.insert(ChatLog(conversation_id=conversation_id, send_time=t, msg_content=f"m{t}"))


def _times(logs):
    return [log.send_time for log in logs]


def test_chat_log_list_before_start(chat_logs):
    _fill(chat_logs, "c1", [1, 2, 3, 4, 5])
    _fill(chat_logs, "c2", [1, 2])
    assert _times(chat_logs.list_by_send_time("c1", 4, 0, 0)) == [3, 2, 1]


def test_chat_log_list_window(chat_logs):
    _fill(chat_logs, "c1", [1, 2, 3, 4, 5])
    assert _times(chat_logs.list_by_send_time("c1", 4, 2, 0)) == [4, 3]


def test_chat_log_list_limit(chat_logs):
    _fill(chat_logs, "c1", [1, 2, 3, 4, 5])
    assert _times(chat_logs.list_by_send_time("c1", 10, 0, 2)) == [5, 4]


def test_chat_log_default_limit(chat_logs):
    _fill(chat_logs, "c1", range(1, DEFAULT_CHAT_LOG_LIMIT + 6))
    logs = chat_logs.list_by_send_time("c1", 10_000, 0, 0)
    assert len(logs) == DEFAULT_CHAT_LOG_LIMIT
    assert logs[0].send_time == DEFAULT_CHAT_LOG_LIMIT + 5


def test_chat_log_find_update_delete(chat_logs):
    _fill(chat_logs, "c1", [1])
    log = chat_logs.list_by_send_time("c1", 2, 0, 0)[0]
    found = chat_logs.find_one(str(log.id))
    assert found.msg_content == "m1"

    found.msg_content = "edited"
    chat_logs.update(found)
    assert found.update_at is not None
    assert chat_logs.find_one(str(log.id)).msg_content == "edited"

    chat_logs.update_make_read(log.id, b"\x01")
    assert chat_logs.find_one(str(log.id)).read_records == b"\x01"

    chat_logs.delete(str(log.id))
    with pytest.raises(NotFoundError):
        chat_logs.find_one(str(log.id))


def test_chat_log_find_invalid_id(chat_logs):
    with pytest.raises(InvalidObjectIdError):
        chat_logs.find_one("bad")
    with pytest.raises(InvalidObjectIdError):
        chat_logs.delete("bad")


def test_chat_log_find_missing(chat_logs):
    with pytest.raises(NotFoundError):
        chat_logs.find_one(str(ObjectId()))


def test_chat_log_list_by_ids_skips_malformed(chat_logs):
    _fill(chat_logs, "c1", [1, 2, 3])
    logs = chat_logs.list_by_send_time("c1", 10, 0, 0)
    wanted = [str(logs[0].id), str(logs[2].id), "bad"]
    result = chat_logs.list_by_ids(wanted)
    assert sorted(str(log.id) for log in result) == sorted(wanted[:2])


def test_conversation_insert_and_find(conversation_model):
    conversation_model.insert(Conversation(conversation_id="a_b", chat_type=2))
    found = conversation_model.find_one("a_b")
    assert found.conversation_id == "a_b"
    assert found.chat_type == 2
    with pytest.raises(NotFoundError):
        conversation_model.find_one("missing")


def test_conversation_insert_with_id_gets_fresh_id(conversation_model):
    original = ObjectId()
    conversation = Conversation(id=original, conversation_id="g1")
    conversation_model.insert(conversation)
    assert conversation.id != original
    assert conversation.create_at is not None
    assert conversation_model.find_one("g1").id == conversation.id


def test_conversation_update_msg_counts_messages(conversation_model):
    conversation_model.insert(Conversation(conversation_id="a_b"))
    conversation_model.update_msg(ChatLog(conversation_id="a_b", msg_content="first"))
    conversation_model.update_msg(ChatLog(conversation_id="a_b", msg_content="second"))
    found = conversation_model.find_one("a_b")
    assert found.total == 2
    assert found.msg.msg_content == "second"


def test_conversation_list_update_delete(conversation_model):
    for cid in ("a", "b", "c"):
        conversation_model.insert(Conversation(conversation_id=cid))
    listed = conversation_model.list_by_conversation_ids(["a", "c", "zz"])
    assert sorted(c.conversation_id for c in listed) == ["a", "c"]

    target = conversation_model.find_one("b")
    target.is_show = True
    conversation_model.update(target)
    assert conversation_model.find_one("b").is_show is True

    conversation_model.delete(str(target.id))
    with pytest.raises(NotFoundError):
        conversation_model.find_one("b")
    with pytest.raises(InvalidObjectIdError):
        conversation_model.delete("bad")


def test_conversations_update_upserts(conversations_model):
    data = Conversations(
        id=ObjectId(),
        user_id="u1",
        conversation_list={"a_b": Conversation(conversation_id="a_b", is_show=True)},
    )
    conversations_model.update(data)
    found = conversations_model.find_by_user_id("u1")
    assert found.id == data.id
    assert found.conversation_list["a_b"].is_show is True
    assert conversations_model.find_one(str(data.id)).user_id == "u1"


def test_conversations_update_without_id_uses_zero_id(conversations_model):
    conversations_model.update(Conversations(user_id="u2"))
    assert conversations_model.find_by_user_id("u2").id == ObjectId("0" * 24)


def test_conversations_update_merges_changes(conversations_model):
    data = Conversations(id=ObjectId(), user_id="u1")
    conversations_model.update(data)
    data.conversation_list["g1"] = Conversation(conversation_id="g1", total=4)
    conversations_model.update(data)
    found = conversations_model.find_by_user_id("u1")
    assert found.conversation_list["g1"].total == 4
    assert len(conversations_model._collection.docs) == 1


def test_conversations_missing_and_delete(conversations_model):
    with pytest.raises(NotFoundError):
        conversations_model.find_by_user_id("nobody")
    conversations_model.insert(Conversations(user_id="u3"))
    found = conversations_model.find_by_user_id("u3")
    conversations_model.delete(str(found.id))
    with pytest.raises(NotFoundError):
        conversations_model.find_one(str(found.id))
    with pytest.raises(InvalidObjectIdError):
        conversations_model.find_one("bad")