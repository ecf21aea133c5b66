from __future__ import annotations

from typing import Iterable, List, Optional, Protocol

from .entities import Candidate, ItemOutcome, Playlist


class CandidateSource(Protocol):
    """Port for anything that can list collections and the candidates inside them."""

    name: str

    def list_owned_playlists(self) -> Iterable[Playlist]:
        """Return all collections visible to the current principal."""

    def list_candidates(self, playlist_id: str) -> List[Candidate]:
        """Return the candidates of one collection, in collection order."""


class MusicProvider(CandidateSource, Protocol):
    """Port defining the minimal contract for streaming platforms we write to.

    Implementations map provider-specific payloads into domain entities and translate
    transport errors into ``corelist.domain.errors`` exceptions.
    """

    max_batch_size: int

    def find_playlist_by_name(self, name: str) -> Optional[Playlist]:
        """Return the owned playlist whose name matches exactly (case-sensitive), if any."""

    def create_playlist(self, name: str) -> Playlist:
        """Create an empty private playlist owned by the current user."""

    def get_playlist_entries(self, playlist_id: str) -> List[str]:
        """Return the URIs currently in the playlist, in playlist order."""

    def add_items(self, playlist_id: str, uris: List[str]) -> List[ItemOutcome]:
        """Append up to ``max_batch_size`` URIs to the end of the playlist, in order."""

    def remove_items(self, playlist_id: str, uris: List[str]) -> List[ItemOutcome]:
        """Remove every occurrence of up to ``max_batch_size`` URIs from the playlist."""

    def replace_items(self, playlist_id: str, uris: List[str]) -> Optional[List[ItemOutcome]]:
        """Atomically replace the playlist contents with up to ``max_batch_size`` URIs.

        Returns None when the platform has no atomic replace.
        """
