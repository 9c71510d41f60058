"""Wire envelopes shared by the signaling relay and call clients.

Every message is one JSON object with a ``type`` tag. ``decode`` parses raw
text into one of the envelope models below, or raises ProtocolError before
any field is trusted. ``encode`` goes the other way with camelCase names.
"""
import json, random
from typing import Annotated, Any, Dict, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

JOIN = 'join'
LEAVE = 'leave'
JOINED = 'joined'
PARTICIPANT_JOINED = 'participantJoined'
PARTICIPANT_LEFT = 'participantLeft'
OFFER = 'offer'
ANSWER = 'answer'
ICE_CANDIDATE = 'ice-candidate'
CHAT_MESSAGE = 'chatMessage'
ERROR = 'error'

ROOM_FULL = 'room-full'

RoomId = Annotated[str, Field(min_length=1)]


class ProtocolError(ValueError):
    """Raised for a message that is not a valid envelope."""


def guest_name() -> str:
    """Display name for a participant that did not pick one."""
    return f'Guest-{random.randint(0, 999)}'


class WireModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class PeerInfo(WireModel):
    id: str
    user_name: str = Field(alias='userName')


class Join(WireModel):
    type: Literal['join'] = JOIN
    room: RoomId
    user_name: Optional[str] = Field(default=None, alias='userName')


class Leave(WireModel):
    type: Literal['leave'] = LEAVE
    room: Optional[str] = None


class Joined(WireModel):
    type: Literal['joined'] = JOINED
    room: str = ''
    self_id: str = Field(alias='selfId')
    peers: Tuple[PeerInfo, ...] = ()


class ParticipantJoined(WireModel):
    type: Literal['participantJoined'] = PARTICIPANT_JOINED
    participant: PeerInfo


class ParticipantLeft(WireModel):
    type: Literal['participantLeft'] = PARTICIPANT_LEFT
    participant: PeerInfo


class Signal(WireModel):
    """Negotiation payload the relay forwards without looking inside."""
    room: RoomId
    payload: Dict[str, Any]
    sender_name: Optional[str] = Field(default=None, alias='senderName')
    sender_id: Optional[str] = Field(default=None, alias='senderId')


class Offer(Signal):
    type: Literal['offer'] = OFFER


class Answer(Signal):
    type: Literal['answer'] = ANSWER


class IceCandidate(Signal):
    type: Literal['ice-candidate'] = ICE_CANDIDATE


class ChatPayload(WireModel):
    text: str
    timestamp: Optional[str] = None
    sender: Optional[str] = None

    @field_validator('timestamp', 'sender', mode='before')
    @classmethod
    def _text_or_none(cls, value):
        return value if isinstance(value, str) else None


class ChatMessage(WireModel):
    type: Literal['chatMessage'] = CHAT_MESSAGE
    room: RoomId
    payload: ChatPayload


class Error(WireModel):
    type: Literal['error'] = ERROR
    reason: str
    detail: str = ''


Envelope = Annotated[
    Union[Join, Leave, Joined, ParticipantJoined, ParticipantLeft,
          Offer, Answer, IceCandidate, ChatMessage, Error],
    Field(discriminator='type'),
]

# kinds a client may send to the relay
CLIENT_KINDS = (Join, Leave, Offer, Answer, IceCandidate, ChatMessage)

envelope_adapter = TypeAdapter(Envelope)


def decode(raw: Union[str, bytes]) -> Envelope:
    """Parse one wire message into an envelope."""
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError, RecursionError) as e:
        raise ProtocolError(f'invalid JSON: {e}') from None
    try:
        return envelope_adapter.validate_python(msg)
    except ValidationError as e:
        errors = '; '.join(f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors())
        raise ProtocolError(f'bad envelope: {errors}') from None


def to_wire(env: Envelope) -> dict:
    msg = env.model_dump(mode='json', by_alias=True, exclude_none=True)
    if isinstance(env, Signal):
        # forwarded verbatim, nulls included
        msg['payload'] = env.payload
    return msg


def encode(env: Envelope) -> str:
    return json.dumps(to_wire(env))
