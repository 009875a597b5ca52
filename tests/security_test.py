import pytest

from security import (
    normalize_room_code,
    sanitize_chat_text,
    sanitize_display_name,
)
from utils.code_generator import (
    ALPHABET,
    ensure_unique_code,
    generate_code,
    generate_participant_id,
)


@pytest.mark.parametrize('raw,expected', [
    ('abc123', 'ABC123'),
    ('  movie-night ', 'MOVIE-NIGHT'),
    ('', None),
    ('bad code', None),
    ('<script>', None),
    ('x' * 33, None),
])
def test_normalize_room_code(raw, expected):
    assert normalize_room_code(raw) == expected


def test_display_name_falls_back_and_is_bounded():
    assert sanitize_display_name('   ') == 'Anonymous'
    assert sanitize_display_name(None) == 'Anonymous'
    assert len(sanitize_display_name('n' * 80)) == 50


def test_chat_text_is_escaped_and_stripped():
    assert sanitize_chat_text('  a & b\x00 ') == 'a &amp; b'
    assert sanitize_chat_text('ding\x07 dong\nbye') == 'ding dong\nbye'
    assert sanitize_chat_text('') == ''
    assert len(sanitize_chat_text('y' * 5000)) == 2000


def test_room_codes_avoid_ambiguous_characters():
    for _ in range(50):
        code = generate_code()
        assert len(code) == 6
        assert set(code) <= set(ALPHABET)
        assert not set(code) & set('01OIL')


def test_unique_code_skips_codes_in_use():

    class Everything:
        def __contains__(self, code):
            return True

    assert ensure_unique_code(set()) not in set()
    with pytest.raises(RuntimeError):
        ensure_unique_code(Everything())


def test_participant_ids_are_distinct():
    ids = {generate_participant_id() for _ in range(200)}
    assert len(ids) == 200
    allowed = set('abcdefghijklmnopqrstuvwxyz0123456789')
    assert all(len(i) == 13 and set(i) <= allowed for i in ids)
