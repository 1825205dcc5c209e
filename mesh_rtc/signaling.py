"""Client side of the signaling channel.

The channel is a single websocket to the rendezvous server. It carries only
control messages (membership and negotiation payloads), delivered in order.
Nothing is replayed across reconnects: a dropped channel surfaces as
:class:`SignalingDisconnected` and the session re-joins from scratch.
"""

import logging
from typing import AsyncIterator, Optional

import websockets

from mesh_rtc.errors import ProtocolError, SignalingDisconnected
from mesh_rtc.protocol import (
    Identity,
    Join,
    Leave,
    SignalingMessage,
    decode_message,
    encode_message,
)

logger = logging.getLogger(__name__)


class SignalingChannel:
    """Websocket connection to the rendezvous server for one room.

    Usage::

        channel = SignalingChannel("ws://localhost:8080")
        await channel.connect("shared-doc", Identity("u1", "Ada"))
        async for message in channel:
            ...
    """

    def __init__(self, url: str):
        self.url = url
        self.room_id: Optional[str] = None
        self.websocket = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self.websocket is not None and not self._closing

    async def connect(self, room_id: str, identity: Identity) -> None:
        """Open the websocket and join the room.

        The server answers the join with a single roster, which is the first
        message yielded by iterating the channel.

        Raises:
            SignalingDisconnected: If the server cannot be reached.
        """
        logger.info(f"Connecting to signaling server at {self.url}")
        try:
            self.websocket = await websockets.connect(self.url)
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise SignalingDisconnected(f"Could not reach signaling server {self.url}: {e}") from e

        self.room_id = room_id
        self._closing = False
        await self.send(Join(room_id, identity.user_id, identity.display_name))
        logger.info(f"Joined room {room_id} as {identity.display_name}")

    async def send(self, message: SignalingMessage) -> None:
        """Send one message.

        Raises:
            SignalingDisconnected: If the channel is not open.
        """
        if self.websocket is None or self._closing:
            raise SignalingDisconnected("Signaling channel is not connected")
        try:
            await self.websocket.send(encode_message(message))
        except websockets.exceptions.ConnectionClosed as e:
            raise SignalingDisconnected(f"Signaling channel closed: {e}") from e

    def __aiter__(self) -> AsyncIterator[SignalingMessage]:
        return self._messages()

    async def _messages(self) -> AsyncIterator[SignalingMessage]:
        if self.websocket is None:
            raise SignalingDisconnected("Signaling channel is not connected")
        try:
            async for raw in self.websocket:
                try:
                    yield decode_message(raw)
                except ProtocolError as e:
                    logger.warning(f"Skipping undecodable signaling frame: {e}")
        except websockets.exceptions.ConnectionClosed as e:
            if not self._closing:
                raise SignalingDisconnected(f"Signaling channel closed: {e}") from e
            return

        # The server closed the socket cleanly without being asked to
        if not self._closing:
            raise SignalingDisconnected("Signaling server closed the connection")

    async def close(self) -> None:
        """Leave the room and close the websocket. Safe to call more than once."""
        if self.websocket is None or self._closing:
            return
        self._closing = True
        websocket, self.websocket = self.websocket, None
        try:
            if self.room_id is not None:
                await websocket.send(encode_message(Leave(self.room_id)))
        except websockets.exceptions.ConnectionClosed:
            logger.debug("Signaling channel already closed before leave")
        await websocket.close()
        logger.info("Signaling channel closed")
