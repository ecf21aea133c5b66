import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

from corelist.domain.entities import Candidate, Playlist
from corelist.domain.errors import AuthExpired, NotFound, RateLimited, TemporaryFailure
from corelist.domain.normalization import compose_song_list

logger = logging.getLogger(__name__)

API_BASE = "https://api.trello.com/1"
UNKNOWN_ARTIST = "Unknown Artist"

_DESC_ARTIST_RE = re.compile(r'(?:artist|by)[:\s]+([^,\n]+)', re.IGNORECASE)
_NAME_ARTIST_RE = re.compile(r'(.+?)\s*-\s*(.+?)$')


def extract_artists(card_name: str, card_desc: Optional[str] = None) -> List[str]:
    """Guess the artist of a song card.

    A description line mentioning "artist" or "by" wins, then a "<title> - <artist>"
    card name; otherwise the artist is unknown.
    """
    if card_desc and card_desc.strip():
        for line in card_desc.split('\n'):
            lowered = line.lower()
            if 'artist' in lowered or 'by' in lowered:
                match = _DESC_ARTIST_RE.search(line)
                if match:
                    return [match.group(1).strip()]
                break

    match = _NAME_ARTIST_RE.match((card_name or '').strip())
    if match:
        # The suffix is the artist, the prefix is the title
        return [match.group(2).strip()]

    return [UNKNOWN_ARTIST]


class TrelloSource:
    """Read-only candidate source backed by Trello boards.

    Each configured board acts as a collection and its cards are the candidates.
    Board lists double as columns of a song request list.
    """

    name = "trello"

    def __init__(self,
                 board_ids: Sequence[str],
                 api_key: Optional[str] = None,
                 token: Optional[str] = None,
                 http: Optional[requests.Session] = None,
                 timeout: int = 15):
        self.board_ids = [b for b in board_ids if b]
        self.api_key = api_key
        self.token = token
        self.http = http or requests.Session()
        self.timeout = timeout

    def _get(self, path: str, **params) -> Any:
        if self.api_key and self.token:
            params.update(key=self.api_key, token=self.token)

        try:
            response = self.http.get(f"{API_BASE}/{path}", params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise TemporaryFailure(f"Trello request {path} failed: {e}") from e

        if response.status_code == 401:
            raise AuthExpired("Trello rejected the API key or token")
        if response.status_code == 429:
            raise RateLimited(retry_after_ms=int(response.headers.get('Retry-After', 1)) * 1000)
        if response.status_code == 404:
            raise NotFound(f"Trello resource not found: {path}")
        if response.status_code >= 400:
            raise TemporaryFailure(f"Trello request {path} failed: HTTP {response.status_code}")
        return response.json()

    def get_board_info(self, board_id: str) -> Playlist:
        """Fetch a board's name; an unreachable board is shown with a placeholder name."""
        try:
            board = self._get(f"boards/{board_id}", fields='name,id')
            return Playlist(id=board.get('id', board_id), name=board.get('name', ''), is_owned=True)
        except AuthExpired:
            raise
        except Exception as e:
            logger.warning(f"Error fetching board info for {board_id}: {e}")
            return Playlist(id=board_id, name=f"Board {board_id[-4:]}", is_owned=True)

    def list_owned_playlists(self) -> List[Playlist]:
        """Return the configured boards."""
        return [self.get_board_info(board_id) for board_id in self.board_ids]

    def get_board_lists(self, board_id: str) -> List[Tuple[str, str]]:
        """Return ``(list id, list name)`` pairs of a board, in board order."""
        lists = self._get(f"boards/{board_id}/lists", fields='id,name')
        return [(item['id'], item.get('name', '')) for item in lists]

    def get_list_cards(self, list_id: str) -> List[Dict[str, str]]:
        cards = self._get(f"lists/{list_id}/cards", fields='id,name,desc')
        return [
            {'id': card['id'], 'name': card.get('name', ''), 'desc': card.get('desc') or ''}
            for card in cards
        ]

    def _card_to_candidate(self, card: Dict[str, str]) -> Candidate:
        return Candidate(
            id=card['id'],
            name=card['name'].strip(),
            artists=extract_artists(card['name'], card.get('desc')),
            uri=f"trello:{card['id']}",
            source=self.name,
        )

    def list_candidates(self, playlist_id: str) -> List[Candidate]:
        """All cards of a board, as candidates."""
        cards = self._get(f"boards/{playlist_id}/cards", fields='id,name,desc')
        return [
            self._card_to_candidate({'id': c['id'], 'name': c.get('name', ''), 'desc': c.get('desc') or ''})
            for c in cards
        ]

    def get_cards_from_lists(self, list_ids: Sequence[str]) -> List[Candidate]:
        """Cards of several lists; a list that fails to load is skipped."""
        candidates = []
        for list_id in list_ids:
            try:
                cards = self.get_list_cards(list_id)
            except AuthExpired:
                raise
            except Exception as e:
                logger.warning(f"Failed to fetch cards from list {list_id}: {e}")
                continue
            candidates.extend(self._card_to_candidate(card) for card in cards)
        return candidates

    def song_list_text(self, board_id: str, list_ids: Optional[Sequence[str]] = None) -> str:
        """Compose the song request text from board lists.

        Each selected list becomes a ``__List name__`` column followed by its card names.
        All lists of the board are used when ``list_ids`` is empty.
        """
        lists = self.get_board_lists(board_id)
        if list_ids:
            names = dict(lists)
            selected = [(list_id, names.get(list_id, 'Column')) for list_id in list_ids]
        else:
            selected = lists

        columns = []
        for list_id, list_name in selected:
            cards = self.get_list_cards(list_id)
            columns.append((list_name, [card['name'] for card in cards]))
        return compose_song_list(columns)
