"""
Pydantic schemas for inbound WebSocket frames.

Clients send ``{"action": "<name>", ...}`` with camelCase fields; snake_case
is accepted too. ``parse_command`` picks the model from the ``action`` tag.
"""
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel
from realtime.entities import PresenceStatus


class WSCommand(BaseModel):
    """Base for client commands."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class WSAuthenticate(WSCommand):
    """Authenticate a connection opened without ``?token=``."""
    action: Literal["authenticate"]
    token: str = Field(..., min_length=1)


class WSJoinRoom(WSCommand):
    action: Literal["joinRoom"]
    room_id: str = Field(..., min_length=1)


class WSLeaveRoom(WSCommand):
    action: Literal["leaveRoom"]
    room_id: str = Field(..., min_length=1)


class WSSendMessage(WSCommand):
    """Content limits are enforced by the message pipeline, not here."""
    action: Literal["sendMessage"]
    room_id: str = Field(..., min_length=1)
    content: str
    type: str = "text"
    thread_id: Optional[str] = None
    reply_to_id: Optional[str] = None
    mentions: List[str] = Field(default_factory=list)
    priority: str = "normal"


class WSEditMessage(WSCommand):
    action: Literal["editMessage"]
    message_id: str
    content: str


class WSDeleteMessage(WSCommand):
    action: Literal["deleteMessage"]
    message_id: str


class WSRestoreMessage(WSCommand):
    action: Literal["restoreMessage"]
    message_id: str


class WSAddReaction(WSCommand):
    action: Literal["addReaction"]
    message_id: str
    emoji: str


class WSRemoveReaction(WSCommand):
    action: Literal["removeReaction"]
    message_id: str
    emoji: str


class WSMarkRead(WSCommand):
    action: Literal["markRead"]
    message_id: str


class WSStartTyping(WSCommand):
    action: Literal["startTyping"]
    room_id: str


class WSStopTyping(WSCommand):
    action: Literal["stopTyping"]
    room_id: str


class WSUpdatePresence(WSCommand):
    action: Literal["updatePresence"]
    status: PresenceStatus
    custom_message: Optional[str] = Field(None, max_length=200)


class WSFetchHistory(WSCommand):
    action: Literal["fetchHistory"]
    room_id: str
    limit: Optional[int] = Field(None, ge=1)
    include_deleted: bool = False


class WSPong(WSCommand):
    action: Literal["pong"]


ClientCommand = Annotated[
    Union[
        WSAuthenticate, WSJoinRoom, WSLeaveRoom, WSSendMessage, WSEditMessage,
        WSDeleteMessage, WSRestoreMessage, WSAddReaction, WSRemoveReaction,
        WSMarkRead, WSStartTyping, WSStopTyping, WSUpdatePresence, WSFetchHistory,
        WSPong,
    ],
    Field(discriminator="action")
]

_command_adapter = TypeAdapter(ClientCommand)

ACTIONS = frozenset(
    model.model_fields["action"].annotation.__args__[0]
    for model in WSCommand.__subclasses__()
)


def parse_command(frame: Dict[str, Any]) -> WSCommand:
    """
    Validate a decoded frame into its command model.

    Raises:
        pydantic.ValidationError: missing or malformed fields
    """
    return _command_adapter.validate_python(frame)
