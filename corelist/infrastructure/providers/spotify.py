import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import spotipy
from spotipy.oauth2 import SpotifyOAuth

from corelist.crosscutting.config import ProviderSession, SecretManager, SPOTIFY_SCOPES
from corelist.domain.entities import Candidate, ItemOutcome, Playlist
from corelist.domain.errors import AuthExpired, NotFound, RateLimited, TemporaryFailure
from corelist.domain.ports import MusicProvider

logger = logging.getLogger(__name__)

PLAYLIST_URL = "https://open.spotify.com/playlist/{}"


class SpotifyProvider(MusicProvider):
    """Spotify music provider implementation."""

    name = "spotify"
    max_batch_size = 100
    supports_replace = True

    def __init__(self,
                 session: ProviderSession,
                 client_id: Optional[str] = None,
                 client_secret: Optional[str] = None,
                 redirect_uri: Optional[str] = None,
                 secret_manager: Optional[SecretManager] = None):
        """Initialize Spotify provider.

        Args:
            session: Spotify credentials; refreshed in place when they expire
            client_id: Spotify client ID for token refresh
            client_secret: Spotify client secret for token refresh
            redirect_uri: Redirect URI registered for the client
            secret_manager: Where refreshed tokens are persisted, if anywhere
        """
        self.session = session
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri or 'http://localhost:3001/callback'
        self.secret_manager = secret_manager
        self._client = spotipy.Spotify(auth=session.access_token, requests_timeout=15)
        self._user_id: Optional[str] = None

    def _refresh_access_token(self) -> bool:
        """Refresh the session's access token.

        Returns:
            True if token was refreshed successfully, False otherwise
        """
        if not self.client_id or not self.client_secret or not self.session.refresh_token:
            logger.warning("Cannot refresh Spotify token: missing client credentials or refresh token")
            return False

        try:
            logger.info("Refreshing Spotify access token...")
            oauth_manager = SpotifyOAuth(
                client_id=self.client_id,
                client_secret=self.client_secret,
                redirect_uri=self.redirect_uri,
                scope=' '.join(SPOTIFY_SCOPES),
            )
            token_info = oauth_manager.refresh_access_token(self.session.refresh_token)
        except Exception as e:
            logger.error(f"Failed to refresh Spotify token: {e}")
            return False

        if not token_info or 'access_token' not in token_info:
            logger.error("Failed to refresh token: invalid response")
            return False

        expires_at = token_info.get('expires_at')
        self.session.update(
            token_info['access_token'],
            refresh_token=token_info.get('refresh_token'),
            expires_at=datetime.fromtimestamp(expires_at) if expires_at else None,
        )
        self._client = spotipy.Spotify(auth=self.session.access_token, requests_timeout=15)

        if self.secret_manager is not None:
            try:
                self.secret_manager.save_session(self.session)
            except Exception as e:
                logger.warning(f"Failed to persist refreshed Spotify tokens: {e}")

        logger.info("Spotify access token refreshed successfully")
        return True

    def _call(self, operation: str, func: Callable[[], Any]) -> Any:
        """Run a Spotify API call, refreshing the token once on 401."""
        for attempt in range(2):
            try:
                return func()
            except Exception as e:
                status = getattr(e, 'http_status', None)
                if status == 401:
                    if attempt == 0 and self._refresh_access_token():
                        logger.info(f"Token refreshed, retrying {operation}")
                        continue
                    raise AuthExpired(f"Spotify authentication expired during {operation}") from e
                if status == 429:
                    headers = getattr(e, 'headers', None) or {}
                    retry_after = int(headers.get('Retry-After', 1))
                    raise RateLimited(retry_after_ms=retry_after * 1000) from e
                if status == 404:
                    raise NotFound(f"Spotify resource not found during {operation}: {e}") from e
                logger.error(f"Spotify {operation} failed: {e}")
                raise TemporaryFailure(f"Spotify {operation} failed: {e}") from e

    def _current_user_id(self) -> str:
        if self._user_id is None:
            self._user_id = self._call("current_user", self._client.current_user)['id']
        return self._user_id

    def _spotify_playlist_to_domain(self, playlist: Dict[str, Any], user_id: str) -> Playlist:
        owner_id = (playlist.get('owner') or {}).get('id', '')
        return Playlist(
            id=playlist['id'],
            name=playlist.get('name', ''),
            owner_id=owner_id,
            is_owned=owner_id == user_id,
            track_count=(playlist.get('tracks') or {}).get('total', 0),
            url=(playlist.get('external_urls') or {}).get('spotify') or PLAYLIST_URL.format(playlist['id']),
        )

    def _spotify_track_to_candidate(self, track: Dict[str, Any]) -> Optional[Candidate]:
        """Convert a Spotify track object to a Candidate, skipping episodes and empty slots."""
        if not track or track.get('type', 'track') != 'track' or not track.get('uri'):
            return None
        return Candidate(
            id=track.get('id'),
            name=track.get('name', ''),
            artists=[a.get('name', '') for a in track.get('artists', []) if a.get('name')],
            uri=track['uri'],
            album=(track.get('album') or {}).get('name'),
            source=self.name,
        )

    def _playlist_items(self, playlist_id: str) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        offset = 0
        limit = 100

        while True:
            page = self._call(
                "list playlist items",
                lambda: self._client.playlist_items(playlist_id, limit=limit, offset=offset,
                                                    additional_types=('track',)),
            )
            if not page or 'items' not in page:
                break
            items.extend(page['items'])
            if not page.get('next') or len(page['items']) < limit:
                break
            offset += limit

        return items

    def list_owned_playlists(self) -> List[Playlist]:
        """List playlists owned by the current user."""
        user_id = self._current_user_id()
        playlists = []
        offset = 0
        limit = 50

        while True:
            page = self._call(
                "list playlists",
                lambda: self._client.current_user_playlists(limit=limit, offset=offset),
            )
            if not page or 'items' not in page:
                break
            for item in page['items']:
                if not item:
                    continue
                playlist = self._spotify_playlist_to_domain(item, user_id)
                if playlist.is_owned:
                    playlists.append(playlist)
            if not page.get('next') or len(page['items']) < limit:
                break
            offset += limit

        return playlists

    def list_candidates(self, playlist_id: str) -> List[Candidate]:
        """List the tracks of a playlist as candidates, in playlist order."""
        candidates = []
        for item in self._playlist_items(playlist_id):
            candidate = self._spotify_track_to_candidate(item.get('track'))
            if candidate is not None:
                candidates.append(candidate)
        return candidates

    def find_playlist_by_name(self, name: str) -> Optional[Playlist]:
        """Return the owned playlist named exactly ``name``."""
        for playlist in self.list_owned_playlists():
            if playlist.name == name:
                return playlist
        return None

    def create_playlist(self, name: str) -> Playlist:
        """Create a new private playlist."""
        user_id = self._current_user_id()
        result = self._call(
            "create playlist",
            lambda: self._client.user_playlist_create(
                user_id, name, public=False, description='Created with corelist'
            ),
        )
        logger.info(f"Created Spotify playlist '{name}' ({result['id']})")
        return self._spotify_playlist_to_domain(result, user_id)

    def get_playlist_entries(self, playlist_id: str) -> List[str]:
        """Return the URIs in the playlist, in order."""
        return [
            item['track']['uri']
            for item in self._playlist_items(playlist_id)
            if item.get('track') and item['track'].get('uri')
        ]

    def _check_batch(self, uris: List[str]) -> None:
        if len(uris) > self.max_batch_size:
            raise ValueError(f"Spotify accepts at most {self.max_batch_size} items per call, got {len(uris)}")

    def add_items(self, playlist_id: str, uris: List[str]) -> List[ItemOutcome]:
        """Append tracks to the end of the playlist."""
        if not uris:
            return []
        self._check_batch(uris)
        self._call("add items", lambda: self._client.playlist_add_items(playlist_id, uris))
        return [ItemOutcome(action="add", uris=list(uris))]

    def remove_items(self, playlist_id: str, uris: List[str]) -> List[ItemOutcome]:
        """Remove every occurrence of the tracks from the playlist."""
        if not uris:
            return []
        self._check_batch(uris)
        self._call(
            "remove items",
            lambda: self._client.playlist_remove_all_occurrences_of_items(playlist_id, uris),
        )
        return [ItemOutcome(action="remove", uris=list(uris))]

    def replace_items(self, playlist_id: str, uris: List[str]) -> List[ItemOutcome]:
        """Replace the whole playlist with ``uris`` (an empty list clears it)."""
        self._check_batch(uris)
        self._call("replace items", lambda: self._client.playlist_replace_items(playlist_id, uris))
        return [ItemOutcome(action="replace", uris=list(uris))]
