"""
Input hygiene for the room server.
Normalizes room codes and sanitizes display names and chat text.
"""
import html
import re
import logging
from typing import Optional

from config import MAX_DISPLAY_NAME_LENGTH, MAX_MESSAGE_LENGTH

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
security_logger = logging.getLogger('security')

ROOM_CODE_PATTERN = re.compile(r'^[A-Z0-9-]{1,32}$')
# C0 controls except tab and newline, plus DEL
CONTROL_CHARS = re.compile(r'[\x00-\x08\x0b-\x1f\x7f]')
DEFAULT_DISPLAY_NAME = "Anonymous"


def normalize_room_code(room_code: str) -> Optional[str]:
    """
    Case-normalize a room code and check its alphabet.

    Args:
        room_code: Raw room code from the client

    Returns:
        The normalized code, or None if it is not acceptable
    """
    code = (room_code or "").strip().upper()
    if not ROOM_CODE_PATTERN.match(code):
        log_security_event("invalid_room_code", {"room_code": code[:40]})
        return None
    return code


def clean_text(value: Optional[str], limit: int, field: str) -> str:
    """
    Bound, de-control and HTML-escape free text coming from a participant.

    The length limit applies to the raw text, before escaping, and the
    result is stripped of surrounding whitespace.
    """
    if not value:
        return ""
    if len(value) > limit:
        log_security_event("oversized_input", {"field": field, "length": len(value)})
        value = value[:limit]
    return html.escape(CONTROL_CHARS.sub("", value)).strip()


def sanitize_display_name(name: Optional[str]) -> str:
    return clean_text(name, MAX_DISPLAY_NAME_LENGTH, "display_name") or DEFAULT_DISPLAY_NAME


def sanitize_chat_text(text: Optional[str]) -> str:
    return clean_text(text, MAX_MESSAGE_LENGTH, "chat_text")


def log_security_event(event_type: str, details: dict):
    """Log a security-relevant event."""
    security_logger.warning(f"SECURITY_EVENT: {event_type} - {details}")
