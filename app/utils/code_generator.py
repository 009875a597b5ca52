"""
Random identifiers for rooms and participants, drawn with `secrets`.
"""
import secrets
import string

# Unambiguous characters only: no 0/O, 1/I/L
ALPHABET = "".join(c for c in string.ascii_uppercase + string.digits
                   if c not in "01OIL")

PARTICIPANT_ALPHABET = string.ascii_lowercase + string.digits

MAX_CODE_ATTEMPTS = 10


def generate_code(length: int = 6) -> str:
    """Random room code like "9QKX7M"."""
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


def ensure_unique_code(existing) -> str:
    """
    Suggest a room code that is not currently in use.

    Args:
        existing: Container of room codes in use

    Raises:
        RuntimeError: If every attempt collided
    """
    for _ in range(MAX_CODE_ATTEMPTS):
        candidate = generate_code()
        if candidate not in existing:
            return candidate
    raise RuntimeError(f"No free room code after {MAX_CODE_ATTEMPTS} attempts")


def generate_participant_id(length: int = 13) -> str:
    """
    Generate a participant id.

    Peers elect the call initiator by comparing these ids, so the id space
    has to be effectively collision-free.
    """
    return "".join(secrets.choice(PARTICIPANT_ALPHABET) for _ in range(length))
