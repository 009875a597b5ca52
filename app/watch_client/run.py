"""
Headless participant: joins a room, meshes with every peer, logs chat.

    python -m watch_client.run ROOM_CODE [DISPLAY_NAME]
"""
import asyncio
import logging
import sys

from config import DEBUG, SIGNALING_URL
from watch_client.media import LocalMedia
from watch_client.peer_mesh import PeerMeshManager
from watch_client.session import connect_session

logger = logging.getLogger(__name__)


async def run_participant(room_code: str, display_name: str, url: str = SIGNALING_URL):
    session = await connect_session(room_code, display_name, url=url)
    mesh = PeerMeshManager(session, LocalMedia())

    session.on("message", lambda m: logger.info(f"[{m.display_name}] {m.text}"))
    mesh.on("link_state", lambda remote_id, state: logger.info(f"{remote_id}: {state.value}"))
    mesh.on("media_error", lambda exc: logger.error(f"Media unavailable: {exc}"))

    await mesh.start()
    try:
        await session.listen()
    finally:
        await mesh.close()
        await session.close()


def main():
    logging.basicConfig(level=logging.DEBUG if DEBUG else logging.INFO)
    if len(sys.argv) < 2:
        print("usage: syncwatch-client ROOM_CODE [DISPLAY_NAME]")
        sys.exit(2)
    display_name = sys.argv[2] if len(sys.argv) > 2 else "Anonymous"
    asyncio.run(run_participant(sys.argv[1], display_name))


if __name__ == "__main__":
    main()
