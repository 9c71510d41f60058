"""Rooms and the participants connected to them.

A room exists only while someone is in it: the first join creates it and the
last leave deletes it. Each participant belongs to at most one room, and a
room holds at most ``capacity`` participants (two for a call).
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

log = logging.getLogger(__name__)

DEFAULT_CAPACITY = 2


class RoomFullError(Exception):
    def __init__(self, room: str, capacity: int):
        super().__init__(f'room {room!r} is full ({capacity} participants)')
        self.room = room
        self.capacity = capacity


class AlreadyInRoomError(Exception):
    def __init__(self, participant_id: str, room: str):
        super().__init__(f'participant {participant_id} is already in room {room!r}')
        self.room = room


@dataclass(eq=False)
class Participant:
    id: str
    user_name: str
    connection: Any = field(default=None, repr=False)
    room: Optional[str] = None


class MemoryRoomStore:
    """Room storage in a plain dict: room -> {participant id: Participant}."""

    def __init__(self):
        self._rooms: Dict[str, Dict[str, Participant]] = {}

    def get(self, room: str) -> Optional[Dict[str, Participant]]:
        return self._rooms.get(room)

    def put(self, room: str, members: Dict[str, Participant]):
        self._rooms[room] = members

    def delete(self, room: str):
        self._rooms.pop(room, None)

    def rooms(self) -> List[str]:
        return list(self._rooms)


class RoomRegistry:
    """Maps room ids to their participants.

    All mutation goes through ``join`` and ``leave``. The registry is meant to
    be owned by a single event loop; it does no locking of its own.
    """

    def __init__(self, store=None, capacity: int = DEFAULT_CAPACITY):
        self.store = store if store is not None else MemoryRoomStore()
        self.capacity = capacity
        # participant id -> room, for quick lookup
        self._room_of: Dict[str, str] = {}

    def join(self, room: str, participant: Participant) -> List[Participant]:
        """Add ``participant`` to ``room`` and return everyone else already there.

        Raises AlreadyInRoomError if the participant sits in another room, and
        RoomFullError if the room is at capacity.
        """
        current = self._room_of.get(participant.id)
        if current is not None and current != room:
            raise AlreadyInRoomError(participant.id, current)

        members = self.store.get(room)
        if members is None:
            members = {}
            log.info('room %r created', room)
        if participant.id not in members and len(members) >= self.capacity:
            raise RoomFullError(room, self.capacity)

        peers = [p for pid, p in members.items() if pid != participant.id]
        members[participant.id] = participant
        self.store.put(room, members)
        self._room_of[participant.id] = room
        participant.room = room
        log.info('%s (%s) joined room %r, %d present',
                 participant.user_name, participant.id, room, len(members))
        return peers

    def leave(self, participant: Participant) -> Tuple[Optional[str], List[Participant]]:
        """Remove ``participant`` from its room.

        Returns ``(room, remaining)``; ``(None, [])`` if it was in no room.
        An emptied room is deleted immediately.
        """
        room = self._room_of.pop(participant.id, None)
        participant.room = None
        if room is None:
            return None, []
        members = self.store.get(room) or {}
        members.pop(participant.id, None)
        if not members:
            self.store.delete(room)
            log.info('room %r deleted (empty)', room)
            return room, []
        self.store.put(room, members)
        log.info('%s (%s) left room %r, %d remaining',
                 participant.user_name, participant.id, room, len(members))
        return room, list(members.values())

    def members(self, room: str) -> List[Participant]:
        return list((self.store.get(room) or {}).values())

    def others(self, room: str, exclude_id: str) -> List[Participant]:
        return [p for p in self.members(room) if p.id != exclude_id]

    def room_of(self, participant_id: str) -> Optional[str]:
        return self._room_of.get(participant_id)

    def count(self, room: str) -> int:
        return len(self.store.get(room) or {})

    def room_list(self) -> List[dict]:
        """Summary of every live room, for logs and admin output."""
        return [
            {'room': room,
             'count': self.count(room),
             'participants': [{'id': p.id, 'userName': p.user_name}
                              for p in self.members(room)]}
            for room in self.store.rooms()
        ]

    def __contains__(self, room: str) -> bool:
        return self.store.get(room) is not None

    def __len__(self) -> int:
        return len(self.store.rooms())
