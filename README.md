# imchat

Building blocks for an instant-messaging backend:

- **`imchat.websocket`** – a WebSocket message server. Clients exchange JSON
  frames (`Message`) carrying a frame type, an id, an acknowledgement
  sequence, a method name, a sender id and a payload. The server dispatches
  data frames to handlers registered as `Route` entries, answers pings, and
  can run with no acknowledgement, a single acknowledgement or a rigorous
  two-step acknowledgement (`AckType`). Connections that stay idle longer
  than the configured limit are closed. A small blocking `Client` dials a
  server and sends and reads JSON values.
- **`imchat.immodels`** – MongoDB models for chat logs (`ChatLogModel`),
  shared conversations (`ConversationModel`) and each user's conversation
  list (`ConversationsModel`), with the documents `ChatLog`, `Conversation`
  and `Conversations`.
- **`imchat.imrpc`** – the conversation service (`ImService`): fetching chat
  history by message id or by send-time window, listing a user's
  conversations with unread counts, and merging a user's read state.

Install with `pip install .`; the test suite needs the `test` extra
(`pip install .[test]`) and runs with `pytest`.

## Messages

```python
from imchat.websocket.message import FrameType, Message, new_message

outgoing = new_message("user-1", {"content": "hello"})
text = outgoing.to_json()

incoming = Message.from_json(text)
assert incoming.frame_type is FrameType.DATA
```

The wire keys are `frameType`, `id`, `ackSeq`, `method`, `formId` and
`data`; missing keys take their defaults and wrongly typed ones raise
`ValueError`. Error frames are built with `new_err_message(err)`, which
produces a frame of type `FrameType.ERR` whose data is the error text.

## Server

```python
from imchat.websocket.message import Route, new_message
from imchat.websocket.options import AckType, ServerOptions
from imchat.websocket.server import Server


def online(server, conn, message):
    server.send(new_message(conn.uid, server.get_users()), conn)


server = Server("0.0.0.0:8080", ServerOptions(ack=AckType.ONLY_ACK))
server.add_routes([Route("user.online", online)])
server.start()  # blocks until server.stop() is called
```

`ServerOptions` holds the path (`pattern`, default `/ws`), the acknowledgement
mode (`ack`), the acknowledgement timeout in seconds (`ack_timeout`, default
30), the maximum idle time in seconds (`max_connection_idle`, default never;
non-positive values fall back to it), the size of the worker pool used by
`Server.schedule` (`concurrency`, default 10) and the `Authentication` to use.

A handler is called as `handler(server, conn, message)`. A data frame whose
method has no route gets a data frame back saying the method does not exist.
A user who connects again replaces, and closes, their earlier connection.
`Server.send` and `Server.send_by_user_id` push any JSON-serialisable value
(or anything with a `to_dict` method) to connections, skipping users who are
offline; `Server.get_users` lists the users online and `Server.get_conn` finds
one user's connection.

`DefaultAuthentication` accepts every connection. Its user id is the values
of the `userId` query parameter in brackets (for `?userId=7`, `[7]`), or the
current time in milliseconds when there is none. Subclass `Authentication`
and implement `auth(request)` and `user_id(request)` to do otherwise;
`Request` exposes the path, query string, headers and a free `context` dict.

## Client

```python
from imchat.websocket.client import Client
from imchat.websocket.options import DialOptions

with Client("localhost:8080", DialOptions(pattern="/ws")) as client:
    client.send({"frameType": 0, "method": "user.online"})
    reply = client.read()
```

`Client.send` redials once if a write fails.

## Storage

```python
from imchat.immodels.models import ChatLogModel, ConversationModel, ConversationsModel

chat_logs = ChatLogModel.connect("mongodb://localhost:27017", "im")
conversation = ConversationModel.connect("mongodb://localhost:27017", "im")
conversations = ConversationsModel.connect("mongodb://localhost:27017", "im")
```

The default collections are `chat_log`, `conversation` and `conversations`.
Each model can also be built directly on any pymongo-like collection object.
`ChatLogModel.list_by_send_time` returns messages newest first, at most 100
unless a positive limit is given. Lookups that find nothing raise
`NotFoundError`; malformed object ids raise `InvalidObjectIdError`.

## Conversation service

```python
from imchat.imrpc.logic import GetChatLogRequest, ImService

service = ImService(chat_logs, conversation, conversations)
history = service.get_chat_log(GetChatLogRequest(conversation_id="a_b", start_send_time=2**62))
response = service.get_conversations("user-1")
```

A user with no conversation list gets an empty `ConversationsResponse`;
`put_conversations` needs the list to exist. Storage failures inside the
service are raised as `DBError`.

## What this package does not do

- It has no command-line programs and loads no configuration files.
- It registers no chat routes of its own (sending, marking read, pushing);
  handlers are for the application to supply.
- `ImService` is plain Python: there is no RPC or HTTP API serving it, and no
  token-based authentication.
- It does not create conversations, record sent messages in the conversation
  models on its own, or pass messages through any message queue.