"""Entry point for joining a call from the command line."""

import asyncio
import uuid
from typing import Dict, Optional

from loguru import logger

from mesh_rtc.config import get_config
from mesh_rtc.protocol import Identity
from mesh_rtc.session import CallSession, CallSnapshot


class RosterLogger:
    """Snapshot subscriber that logs participants joining, leaving and changing state."""

    def __init__(self):
        self.states: Dict[str, str] = {}
        self.last_error: Optional[Exception] = None

    def __call__(self, snapshot: CallSnapshot) -> None:
        current = {cid: peer.state.value for cid, peer in snapshot.peers.items()}

        for cid, state in current.items():
            name = snapshot.peers[cid].display_name
            if cid not in self.states:
                logger.info(f"{name} is in the call ({state})")
            elif self.states[cid] != state:
                logger.info(f"{name}: {self.states[cid]} -> {state}")

        for cid in self.states:
            if cid not in current:
                error = snapshot.failed_peers.get(cid)
                if error is not None:
                    logger.warning(f"Lost connection to {cid}: {error}")
                else:
                    logger.info(f"{cid} left the call")

        if snapshot.last_error is not None and snapshot.last_error is not self.last_error:
            logger.error(str(snapshot.last_error))
        self.last_error = snapshot.last_error
        self.states = current


async def _run_call(room_id: str, identity: Identity, server: Optional[str], audio: bool, video: bool) -> None:
    config = get_config()
    if server:
        config.signaling_websocket = server

    session = CallSession(config)
    session.subscribe(RosterLogger())

    error = await session.join(room_id, identity)
    if error is not None:
        logger.error(f"Could not join room {room_id}: {error}")
        return

    try:
        if audio or video:
            await session.enable_media(audio=audio, video=video)
        logger.info(f"In room {room_id} as {identity.display_name}. Press Ctrl-C to leave.")
        await asyncio.Future()
    finally:
        await session.leave()


def run_call(
    room_id: str = None,
    name: str = None,
    server: str = None,
    audio: bool = True,
    video: bool = True,
) -> None:
    """Join a room and stay in the call until interrupted.

    Args:
        room_id: Room to join. Defaults to the configured room.
        name: Display name shown to other participants.
        server: Signaling server URL overriding the configuration.
        audio: Start with the microphone on.
        video: Start with the camera on.

    Returns:
        None
    """
    room_id = room_id or get_config().default_room
    identity = Identity(user_id=str(uuid.uuid4()), display_name=name or "Anonymous")

    logger.info(f"Joining room {room_id}...")
    try:
        asyncio.run(_run_call(room_id, identity, server, audio, video))
    except KeyboardInterrupt:
        logger.info("Call interrupted by user. Leaving...")

    logger.info("Call ended")
