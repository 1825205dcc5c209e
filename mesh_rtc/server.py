"""Room-based rendezvous (signaling) server.

Tracks which connections are in which room and relays negotiation payloads
between them. Media never passes through here.

Usage:
    mesh-rtc serve [--host HOST] [--port PORT]
"""

import asyncio
import functools
import json
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import websockets
from loguru import logger

from mesh_rtc.errors import ProtocolError
from mesh_rtc.protocol import (
    MSG_SIGNAL,
    Error,
    Join,
    Leave,
    PeerInfo,
    PeerJoined,
    PeerLeft,
    Roster,
    Signal,
    SignalingMessage,
    decode_message,
    encode_message,
)


@dataclass
class Member:
    """One websocket connection known to the registry."""

    connection_id: str
    websocket: Any
    room_id: Optional[str] = None
    user_id: str = ""
    display_name: str = ""

    @property
    def info(self) -> PeerInfo:
        return PeerInfo(self.connection_id, self.display_name)


class RoomRegistry:
    """Room membership and message relay.

    Attributes:
        members: Every registered connection keyed by connection id.
        rooms: Room id -> members of that room keyed by connection id.
    """

    def __init__(self):
        self.members: Dict[str, Member] = {}
        self.rooms: Dict[str, Dict[str, Member]] = {}

    def register(self, websocket: Any) -> str:
        """Assign a connection id to a new websocket."""
        connection_id = str(uuid.uuid4())
        self.members[connection_id] = Member(connection_id, websocket)
        logger.debug(f"Registered connection {connection_id} (total: {len(self.members)})")
        return connection_id

    async def unregister(self, connection_id: str) -> None:
        """Forget a connection, leaving its room first."""
        member = self.members.pop(connection_id, None)
        if member is None:
            return
        if member.room_id is not None:
            await self._leave(member)
        logger.debug(f"Removed connection {connection_id} (remaining: {len(self.members)})")

    async def handle_message(self, connection_id: str, raw: Union[str, bytes]) -> None:
        """Handle one frame from a registered connection."""
        member = self.members.get(connection_id)
        if member is None:
            logger.warning(f"Message from unregistered connection {connection_id}")
            return

        try:
            message = decode_message(raw)
        except ProtocolError as e:
            logger.warning(f"Bad frame from {connection_id}: {e}")
            await self._send(member, Error(str(e)))
            return

        if isinstance(message, Join):
            await self._join(member, message)
        elif isinstance(message, Leave):
            if member.room_id is not None:
                await self._leave(member)
        elif isinstance(message, Signal):
            await self._relay(member, message, json.loads(raw)["payload"])
        else:
            await self._send(member, Error(f"Unexpected message from client: {type(message).__name__}"))

    async def _join(self, member: Member, message: Join) -> None:
        if member.room_id is not None:
            await self._leave(member)

        room = self.rooms.setdefault(message.room_id, {})
        roster = Roster(peers=tuple(other.info for other in room.values()))

        member.room_id = message.room_id
        member.user_id = message.user_id
        member.display_name = message.display_name
        room[member.connection_id] = member

        logger.info(
            f"{member.display_name or member.connection_id} joined room "
            f"{message.room_id} ({len(room)} member(s))"
        )
        await self._send(member, roster)
        await self._broadcast(message.room_id, PeerJoined(member.info), exclude=member.connection_id)

    async def _leave(self, member: Member) -> None:
        room_id, member.room_id = member.room_id, None
        room = self.rooms.get(room_id, {})
        room.pop(member.connection_id, None)
        if not room:
            self.rooms.pop(room_id, None)
            logger.info(f"Room {room_id} is empty, removed")
        else:
            logger.info(f"{member.connection_id} left room {room_id} ({len(room)} remaining)")
            await self._broadcast(room_id, PeerLeft(member.connection_id))

    async def _relay(self, member: Member, message: Signal, payload: Dict[str, Any]) -> None:
        if member.room_id is None:
            await self._send(member, Error("Join a room before signaling"))
            return

        target = self.rooms.get(member.room_id, {}).get(message.to or "")
        if target is None:
            logger.warning(f"Signal target not in room {member.room_id}: {message.to}")
            await self._send(member, Error(f"Unknown recipient: {message.to}"))
            return

        # Payload is forwarded as received, only the sender is stamped
        frame = json.dumps({"type": MSG_SIGNAL, "from": member.connection_id, "payload": payload})
        await self._send(target, frame)
        logger.debug(
            f"Relayed {payload.get('type', 'candidate')} from {member.connection_id} "
            f"to {target.connection_id}"
        )

    async def _broadcast(
        self, room_id: str, message: SignalingMessage, exclude: Optional[str] = None
    ) -> None:
        for other in list(self.rooms.get(room_id, {}).values()):
            if other.connection_id != exclude:
                await self._send(other, message)

    async def _send(self, member: Member, message: Union[SignalingMessage, str]) -> None:
        frame = message if isinstance(message, str) else encode_message(message)
        try:
            await member.websocket.send(frame)
        except websockets.exceptions.ConnectionClosed:
            logger.debug(f"Could not deliver to {member.connection_id}: connection closed")


async def handler(websocket, registry: RoomRegistry) -> None:
    """Serve one websocket connection until it closes."""
    connection_id = registry.register(websocket)
    try:
        async for raw in websocket:
            await registry.handle_message(connection_id, raw)
    except websockets.exceptions.ConnectionClosed:
        logger.info(f"Connection closed: {connection_id}")
    finally:
        await registry.unregister(connection_id)


async def run_server(host: str = "localhost", port: int = 8080) -> None:
    """Run the rendezvous server until cancelled."""
    registry = RoomRegistry()
    async with websockets.serve(functools.partial(handler, registry=registry), host, port):
        logger.info(f"Signaling server running on ws://{host}:{port}")
        await asyncio.Future()  # Run forever
