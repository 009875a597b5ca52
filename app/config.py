"""
Environment configuration shared by the room server and the watch client.
"""
import os
from dotenv import load_dotenv

load_dotenv()


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


# ============ SERVER ============
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
PRODUCTION_DOMAIN = os.getenv("PRODUCTION_DOMAIN", "")
HOST = os.getenv("HOST", "0.0.0.0")
PORT = _env_int("PORT", 8000)

MAX_ROOM_MESSAGES = _env_int("MAX_ROOM_MESSAGES", 100)
MAX_MESSAGE_LENGTH = _env_int("MAX_MESSAGE_LENGTH", 2000)
MAX_DISPLAY_NAME_LENGTH = _env_int("MAX_DISPLAY_NAME_LENGTH", 50)
WS_MAX_EVENTS_PER_SECOND = _env_int("WS_MAX_EVENTS_PER_SECOND", 100)

# ============ CLIENT ============
SIGNALING_URL = os.getenv("SIGNALING_URL", "ws://localhost:8000/ws")

ICE_SERVERS = [
    url.strip()
    for url in os.getenv(
        "ICE_SERVERS",
        "stun:stun.l.google.com:19302,stun:stun1.l.google.com:19302,"
        "stun:stun2.l.google.com:19302,stun:stun.stunprotocol.org:3478",
    ).split(",")
    if url.strip()
]

# Peer mesh timers (seconds)
HEALTH_CHECK_INTERVAL = _env_float("HEALTH_CHECK_INTERVAL", 3.0)
RECONNECT_SCHEDULE_DELAY = _env_float("RECONNECT_SCHEDULE_DELAY", 2.0)
RECONNECT_DELAY = _env_float("RECONNECT_DELAY", 0.5)
CALL_START_DELAY = _env_float("CALL_START_DELAY", 0.5)
JOINED_CALL_START_DELAY = _env_float("JOINED_CALL_START_DELAY", 1.0)
FOREGROUND_SETTLE_DELAY = _env_float("FOREGROUND_SETTLE_DELAY", 1.0)

# Playback sync thresholds (seconds)
SEEK_DRIFT_THRESHOLD = _env_float("SEEK_DRIFT_THRESHOLD", 1.5)
SEEK_GUARD_SECONDS = _env_float("SEEK_GUARD_SECONDS", 0.5)
PROGRESS_DRIFT_THRESHOLD = _env_float("PROGRESS_DRIFT_THRESHOLD", 3.0)
PROGRESS_BROADCAST_INTERVAL = _env_float("PROGRESS_BROADCAST_INTERVAL", 10.0)

# Local capture devices, passed to aiortc's MediaPlayer
MEDIA_VIDEO_DEVICE = os.getenv("MEDIA_VIDEO_DEVICE", "/dev/video0")
MEDIA_AUDIO_DEVICE = os.getenv("MEDIA_AUDIO_DEVICE", "default")
MEDIA_FORMAT = os.getenv("MEDIA_FORMAT", "v4l2")
MEDIA_AUDIO_FORMAT = os.getenv("MEDIA_AUDIO_FORMAT", "pulse")
