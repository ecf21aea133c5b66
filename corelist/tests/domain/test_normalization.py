import pytest

from corelist.domain.normalization import (
    compose_song_list,
    fallback_prefix,
    is_column_header,
    normalize,
    normalize_artists,
    parse_song_requests,
)


def test_normalize_removes_parenthetical_content():
    assert normalize("Perfect (Acoustic Version)") == "Perfect"
    assert normalize("Song (Live) (2019 Remaster)") == "Song"
    assert normalize("Song (Remix (Extended))") == "Song"


@pytest.mark.parametrize("text", [
    "Perfect (Acoustic Version)",
    "(intro) Song (outro)",
    "A (b) C (d) E",
    "Song (Remix (Extended))",
    "((Deep)) Cut",
])
def test_normalize_removes_every_parenthesis_pair(text):
    result = normalize(text)
    assert "(" not in result
    assert ")" not in result


def test_normalize_removes_apostrophes():
    assert normalize("Don't Stop Me Now") == "Dont Stop Me Now"
    assert normalize("Sweet Child O’ Mine") == "Sweet Child O Mine"
    assert "'" not in normalize("Rock 'n' Roll Ain't Noise Pollution")


def test_normalize_removes_decorative_arrow():
    assert normalize("➔ Bohemian Rhapsody") == "Bohemian Rhapsody"
    assert normalize("âž” Bohemian Rhapsody") == "Bohemian Rhapsody"


def test_normalize_preserves_case_and_trims():
    assert normalize("  Shape of You  ") == "Shape of You"


@pytest.mark.parametrize("empty", ["", None])
def test_normalize_fails_closed_on_empty_input(empty):
    assert normalize(empty) == ""


def test_normalize_artists_joins_with_single_space():
    assert normalize_artists(["Guns N' Roses", "Slash (guitar)"]) == "Guns N Roses Slash"
    assert normalize_artists([]) == ""
    assert normalize_artists(None) == ""
    assert normalize_artists("Ed Sheeran") == "Ed Sheeran"


class TestSongRequestParsing:
    """Tests for turning free text into song requests."""

    def test_strips_bullets_and_drops_blank_lines(self):
        text = "  - Perfect\n- Shape of You\n\n   \nThinking Out Loud\n"
        assert parse_song_requests(text) == ["Perfect", "Shape of You", "Thinking Out Loud"]

    def test_drops_column_headers(self):
        text = "__Rock__\nBohemian Rhapsody\n\n__Pop__\nLevitating"
        assert parse_song_requests(text) == ["Bohemian Rhapsody", "Levitating"]

    def test_keeps_input_order_and_duplicates(self):
        assert parse_song_requests("B\nA\nB") == ["B", "A", "B"]

    def test_handles_windows_line_endings(self):
        assert parse_song_requests("One\r\nTwo\r\n") == ["One", "Two"]

    def test_empty_text(self):
        assert parse_song_requests("") == []
        assert parse_song_requests(None) == []

    def test_is_column_header(self):
        assert is_column_header("__Rock Songs__")
        assert not is_column_header("__Rock Songs")
        assert not is_column_header("Rock")


def test_compose_song_list_round_trips_through_parser():
    text = compose_song_list([("Rock", ["Bohemian Rhapsody - Queen"]), ("", ["Levitating"])])

    assert text.split("\n") == [
        "__Rock__", "Bohemian Rhapsody - Queen", "",
        "__Column__", "Levitating", "",
    ]
    assert parse_song_requests(text) == ["Bohemian Rhapsody - Queen", "Levitating"]


def test_fallback_prefix():
    assert fallback_prefix("Shape - Remix Version") == "Shape"
    assert fallback_prefix("Song Title - Live - 2019") == "Song Title"
    assert fallback_prefix("Shape of You") is None
    assert fallback_prefix("Well-Known") is None
    assert fallback_prefix(" - suffix only") is None
