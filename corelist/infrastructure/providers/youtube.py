import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

import requests

from corelist.crosscutting.config import ProviderSession, SecretManager
from corelist.domain.entities import Candidate, ItemOutcome, Playlist
from corelist.domain.errors import (
    AuthExpired, NotFound, PermanentFailure, RateLimited, TemporaryFailure,
)
from corelist.domain.ports import MusicProvider

logger = logging.getLogger(__name__)

API_BASE = "https://www.googleapis.com/youtube/v3"
TOKEN_URL = "https://oauth2.googleapis.com/token"
WATCH_URL = "https://www.youtube.com/watch?v={}"
PLAYLIST_URL = "https://www.youtube.com/playlist?list={}"


def video_id_from_uri(uri: str) -> str:
    """Extract the video id from a watch URL (a bare id is returned unchanged)."""
    if "watch?v=" in uri:
        return uri.split("watch?v=", 1)[1].split("&", 1)[0]
    return uri


class YouTubeProvider(MusicProvider):
    """YouTube Data API v3 provider.

    Playlists are YouTube playlists of the authorized channel and candidates are the
    videos in them, identified by their watch URL. YouTube has no batch insert, so
    every video is inserted or deleted with its own request and reported on its own.
    """

    name = "youtube"
    max_batch_size = 50
    supports_replace = False

    def __init__(self,
                 session: ProviderSession,
                 client_id: Optional[str] = None,
                 client_secret: Optional[str] = None,
                 api_key: Optional[str] = None,
                 secret_manager: Optional[SecretManager] = None,
                 http: Optional[requests.Session] = None,
                 timeout: int = 15):
        self.session = session
        self.client_id = client_id
        self.client_secret = client_secret
        self.api_key = api_key
        self.secret_manager = secret_manager
        self.http = http or requests.Session()
        self.timeout = timeout

    def refresh_access_token(self) -> bool:
        """Exchange the refresh token for a new access token at Google's token endpoint."""
        if not self.client_id or not self.client_secret or not self.session.refresh_token:
            logger.warning("Cannot refresh YouTube token: missing client credentials or refresh token")
            return False

        logger.info("Refreshing YouTube access token...")
        try:
            response = self.http.post(TOKEN_URL, data={
                'client_id': self.client_id,
                'client_secret': self.client_secret,
                'refresh_token': self.session.refresh_token,
                'grant_type': 'refresh_token',
            }, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Failed to refresh YouTube token: {e}")
            return False

        if response.status_code != 200:
            logger.error(f"Failed to refresh YouTube token: HTTP {response.status_code}")
            return False

        token_info = response.json()
        if 'access_token' not in token_info:
            logger.error("Failed to refresh token: invalid response")
            return False

        expires_in = token_info.get('expires_in')
        self.session.update(
            token_info['access_token'],
            refresh_token=token_info.get('refresh_token'),
            expires_at=datetime.now() + timedelta(seconds=int(expires_in)) if expires_in else None,
        )

        if self.secret_manager is not None:
            try:
                self.secret_manager.save_session(self.session)
            except Exception as e:
                logger.warning(f"Failed to persist refreshed YouTube tokens: {e}")

        logger.info("YouTube access token refreshed successfully")
        return True

    def _headers(self) -> Dict[str, str]:
        headers = {'Accept': 'application/json'}
        if self.session.access_token:
            headers['Authorization'] = f"Bearer {self.session.access_token}"
        return headers

    @staticmethod
    def _error_reason(response: requests.Response) -> str:
        try:
            errors = response.json().get('error', {}).get('errors', [])
        except ValueError:
            return ''
        return errors[0].get('reason', '') if errors else ''

    def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                 json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Perform an API request, refreshing the token once on 401."""
        params = dict(params or {})
        if self.api_key:
            params.setdefault('key', self.api_key)

        for attempt in range(2):
            try:
                response = self.http.request(method, f"{API_BASE}/{path}", params=params, json=json,
                                             headers=self._headers(), timeout=self.timeout)
            except requests.RequestException as e:
                raise TemporaryFailure(f"YouTube {method} {path} failed: {e}") from e

            if response.status_code == 401:
                if attempt == 0 and self.refresh_access_token():
                    logger.info(f"Token refreshed, retrying {method} {path}")
                    continue
                raise AuthExpired("YouTube authentication expired")
            break

        status = response.status_code
        if status == 429 or (status == 403 and self._error_reason(response) in ('quotaExceeded', 'rateLimitExceeded')):
            retry_after = int(response.headers.get('Retry-After', 1))
            raise RateLimited(retry_after_ms=retry_after * 1000)
        if status == 404:
            raise NotFound(f"YouTube resource not found: {path}")
        if status >= 500:
            raise TemporaryFailure(f"YouTube {method} {path} failed: HTTP {status}")
        if status >= 400:
            raise PermanentFailure(f"YouTube {method} {path} rejected: HTTP {status} {self._error_reason(response)}".strip())

        if status == 204 or not response.content:
            return {}
        return response.json()

    def _paginate(self, path: str, params: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
        page_params = dict(params, maxResults=50)
        while True:
            data = self._request('GET', path, params=page_params)
            for item in data.get('items', []):
                yield item
            next_token = data.get('nextPageToken')
            if not next_token:
                break
            page_params['pageToken'] = next_token

    @staticmethod
    def _youtube_playlist_to_domain(item: Dict[str, Any]) -> Playlist:
        snippet = item.get('snippet', {})
        return Playlist(
            id=item['id'],
            name=snippet.get('title', ''),
            owner_id=snippet.get('channelId', ''),
            is_owned=True,
            track_count=item.get('contentDetails', {}).get('itemCount', 0),
            url=PLAYLIST_URL.format(item['id']),
        )

    def _playlist_items(self, playlist_id: str) -> Iterator[Dict[str, Any]]:
        return self._paginate('playlistItems', {'part': 'snippet', 'playlistId': playlist_id})

    @staticmethod
    def _video_id(item: Dict[str, Any]) -> Optional[str]:
        return item.get('snippet', {}).get('resourceId', {}).get('videoId')

    def list_owned_playlists(self) -> List[Playlist]:
        """List playlists of the authorized channel."""
        return [
            self._youtube_playlist_to_domain(item)
            for item in self._paginate('playlists', {'part': 'snippet,contentDetails', 'mine': 'true'})
        ]

    def list_candidates(self, playlist_id: str) -> List[Candidate]:
        """List the videos of a playlist as candidates; the uploader stands in for the artist."""
        candidates = []
        for item in self._playlist_items(playlist_id):
            video_id = self._video_id(item)
            if not video_id:
                continue
            snippet = item.get('snippet', {})
            channel = snippet.get('videoOwnerChannelTitle') or snippet.get('channelTitle')
            candidates.append(Candidate(
                id=video_id,
                name=snippet.get('title', ''),
                artists=[channel] if channel else [],
                uri=WATCH_URL.format(video_id),
                source=self.name,
            ))
        return candidates

    def find_playlist_by_name(self, name: str) -> Optional[Playlist]:
        for playlist in self.list_owned_playlists():
            if playlist.name == name:
                return playlist
        return None

    def create_playlist(self, name: str) -> Playlist:
        """Create a private playlist on the authorized channel."""
        data = self._request('POST', 'playlists', params={'part': 'snippet,status'}, json={
            'snippet': {'title': name, 'description': 'Created with corelist'},
            'status': {'privacyStatus': 'private'},
        })
        logger.info(f"Created YouTube playlist '{name}' ({data['id']})")
        return self._youtube_playlist_to_domain(data)

    def get_playlist_entries(self, playlist_id: str) -> List[str]:
        return [
            WATCH_URL.format(video_id)
            for video_id in (self._video_id(item) for item in self._playlist_items(playlist_id))
            if video_id
        ]

    def _per_item(self, action: str, uri: str, func) -> ItemOutcome:
        try:
            func()
        except AuthExpired:
            raise
        except Exception as e:
            logger.warning(f"Failed to {action} video {uri}: {e}")
            return ItemOutcome(action=action, uris=[uri], ok=False, reason=str(e))
        return ItemOutcome(action=action, uris=[uri])

    def add_items(self, playlist_id: str, uris: List[str]) -> List[ItemOutcome]:
        """Insert videos one by one at the end of the playlist."""
        outcomes = []
        for uri in uris:
            body = {'snippet': {
                'playlistId': playlist_id,
                'resourceId': {'kind': 'youtube#video', 'videoId': video_id_from_uri(uri)},
            }}
            outcomes.append(self._per_item(
                'add', uri,
                lambda b=body: self._request('POST', 'playlistItems', params={'part': 'snippet'}, json=b),
            ))
        return outcomes

    def remove_items(self, playlist_id: str, uris: List[str]) -> List[ItemOutcome]:
        """Delete every playlist item that holds one of the videos."""
        wanted = {video_id_from_uri(uri): uri for uri in uris}
        item_ids: Dict[str, List[str]] = {}
        for item in self._playlist_items(playlist_id):
            video_id = self._video_id(item)
            if video_id in wanted:
                item_ids.setdefault(video_id, []).append(item['id'])

        outcomes = []
        for video_id, uri in wanted.items():
            for item_id in item_ids.get(video_id, []):
                outcomes.append(self._per_item(
                    'remove', uri,
                    lambda i=item_id: self._request('DELETE', 'playlistItems', params={'id': i}),
                ))
        return outcomes

    def replace_items(self, playlist_id: str, uris: List[str]) -> Optional[List[ItemOutcome]]:
        """YouTube has no atomic replace."""
        return None
