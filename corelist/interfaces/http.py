import os
import logging
from datetime import datetime, timedelta
from typing import Any, List, Optional

import requests
from flask import Flask, request, jsonify

from corelist.application.diff import compute_diff
from corelist.application.matching import SongMatcher, match_statistics
from corelist.crosscutting.config import ConfigError, SecretManager
from corelist.domain.entities import Candidate, UpdatePolicy
from corelist.domain.normalization import parse_song_requests
from corelist.infrastructure.providers.youtube import YouTubeProvider

SPOTIFY_TOKEN_URL = 'https://accounts.spotify.com/api/token'
TOKEN_VALIDITY_BUFFER = timedelta(minutes=5)


def _artist_name(artist: Any) -> str:
    if isinstance(artist, str):
        return artist
    if isinstance(artist, dict) and isinstance(artist.get('name'), str):
        return artist['name']
    raise ValueError(f"artist must be a string or an object with a 'name', got {artist!r}")


def _candidate_from_json(data: Any) -> Candidate:
    """Build a candidate from a library entry, raising ValueError on malformed entries."""
    if not isinstance(data, dict):
        raise ValueError(f"library entry must be an object, got {data!r}")
    artists = data.get('artists') or []
    if isinstance(artists, str):
        artists = [artists]
    if not isinstance(artists, list):
        raise ValueError(f"'artists' must be a string or a list, got {artists!r}")
    return Candidate(
        name=str(data.get('name') or ''),
        artists=[_artist_name(a) for a in artists],
        uri=data.get('uri', ''),
        id=data.get('id'),
        album=data.get('album'),
        source=data.get('source'),
    )


class HTTPServer:
    """HTTP server for corelist: health checks, matching and diff endpoints, token helpers."""

    def __init__(self, host: str = 'localhost', port: int = 3001, debug: bool = False,
                 secret_manager: Optional[SecretManager] = None):
        """Initialize HTTP server."""
        self.host = host
        self.port = port
        self.debug = debug
        self.app = Flask(__name__)
        self.logger = logging.getLogger(__name__)
        self.secret_manager = secret_manager

        self.version = "0.1.0"
        self.commit = os.getenv('GIT_COMMIT', 'unknown')

        self._setup_routes()

    def _secrets(self) -> SecretManager:
        if self.secret_manager is None:
            self.secret_manager = SecretManager()
        return self.secret_manager

    def _setup_routes(self) -> None:
        """Setup Flask routes."""

        @self.app.route('/health', methods=['GET'])
        def health_check():
            return jsonify({
                'status': 'healthy',
                'version': self.version,
                'commit': self.commit,
                'timestamp': datetime.now().isoformat()
            }), 200

        @self.app.route('/', methods=['GET'])
        def root():
            return jsonify({
                'service': 'corelist HTTP Interface',
                'version': self.version,
                'endpoints': {
                    'health': '/health',
                    'match': '/api/match',
                    'diff': '/api/diff',
                    'spotify_token': '/api/spotify/token',
                    'youtube_refresh': '/api/youtube/refresh',
                    'youtube_token_status': '/api/youtube/token/status'
                }
            }), 200

        @self.app.route('/api/match', methods=['POST'])
        def match():
            """Match song requests against a candidate library supplied in the body."""
            body = request.get_json(silent=True) or {}
            songs = body.get('songs', [])
            library = body.get('library', [])
            if not isinstance(library, list) or not isinstance(songs, (list, str)):
                return jsonify({'error': "'songs' must be text or a list and 'library' a list"}), 400

            try:
                matcher = SongMatcher()
                if body.get('threshold') is not None:
                    matcher.set_threshold(float(body['threshold']))
                if body.get('songWeight') is not None:
                    matcher.set_song_weight(float(body['songWeight']))
            except (TypeError, ValueError) as e:
                return jsonify({'error': 'Invalid matcher settings', 'details': str(e)}), 400

            try:
                candidates = [_candidate_from_json(c) for c in library]
            except ValueError as e:
                return jsonify({'error': 'Invalid library entry', 'details': str(e)}), 400

            requests_ = parse_song_requests(songs) if isinstance(songs, str) else [str(s) for s in songs]
            batch = matcher.match_all(requests_, candidates)

            return jsonify({
                'matched': [
                    {
                        'input': m.input,
                        'name': m.matched.name,
                        'artists': m.matched.artists,
                        'uri': m.matched.uri,
                        'score': m.score,
                    }
                    for m in batch.matched
                ],
                'unmatched': batch.unmatched,
                'stats': match_statistics(batch),
            }), 200

        @self.app.route('/api/diff', methods=['POST'])
        def diff():
            """Compute the plan turning ``current`` into ``target`` under ``policy``."""
            body = request.get_json(silent=True) or {}
            current: List[str] = body.get('current', [])
            target: List[str] = body.get('target', [])
            try:
                policy = UpdatePolicy(body.get('policy', UpdatePolicy.APPEND.value))
            except ValueError:
                return jsonify({'error': f"Unknown policy: {body.get('policy')}"}), 400

            plan = compute_diff(current, target, policy)
            return jsonify({
                'policy': plan.policy.value,
                'toAdd': plan.to_add,
                'toRemove': plan.to_remove,
                'finalOrder': plan.final_order,
                'needsReorder': plan.needs_reorder,
                'addedCount': plan.added_count,
                'skippedCount': plan.skipped_count,
            }), 200

        @self.app.route('/api/spotify/token', methods=['POST'])
        def spotify_token():
            """Exchange a PKCE authorization code for Spotify tokens."""
            body = request.get_json(silent=True) or {}
            if not body.get('code'):
                return jsonify({'error': 'Missing authorization code'}), 400

            secrets = self._secrets()
            data = {
                'grant_type': 'authorization_code',
                'code': body['code'],
                'redirect_uri': body.get('redirectUri') or secrets.get(
                    'SPOTIFY_REDIRECT_URI', 'http://localhost:3001/callback'),
                'client_id': secrets.get('SPOTIFY_CLIENT_ID'),
                'client_secret': secrets.get('SPOTIFY_CLIENT_SECRET'),
            }
            if body.get('codeVerifier'):
                data['code_verifier'] = body['codeVerifier']

            try:
                response = requests.post(SPOTIFY_TOKEN_URL, data=data, timeout=15)
            except requests.RequestException as e:
                self.logger.error(f"Token exchange error: {e}")
                return jsonify({'error': 'Failed to exchange code for token', 'details': str(e)}), 400

            if response.status_code != 200:
                self.logger.error(f"Token exchange failed: {response.status_code}")
                return jsonify({
                    'error': 'Failed to exchange code for token',
                    'details': response.text,
                }), 400

            tokens = response.json()
            session = secrets.load_session('spotify')
            session.update(
                tokens.get('access_token'),
                refresh_token=tokens.get('refresh_token'),
                expires_at=datetime.now() + timedelta(seconds=tokens.get('expires_in', 3600)),
            )
            try:
                secrets.save_session(session)
            except ConfigError as e:
                self.logger.warning(f"Failed to save Spotify tokens: {e}")
            return jsonify(tokens), 200

        @self.app.route('/api/youtube/refresh', methods=['POST'])
        def youtube_refresh():
            secrets = self._secrets()
            session = secrets.load_session('youtube')
            if not session.refresh_token:
                return jsonify({
                    'error': 'YouTube token not available',
                    'details': 'No YouTube refresh token configured',
                }), 400

            try:
                client = secrets.get_youtube_client_config()
            except ConfigError as e:
                return jsonify({'error': 'Failed to refresh token', 'details': str(e)}), 400

            provider = YouTubeProvider(session, client_id=client['client_id'],
                                       client_secret=client['client_secret'], secret_manager=secrets)
            if not provider.refresh_access_token():
                return jsonify({'error': 'Failed to refresh token', 'details': 'Token endpoint rejected the refresh'}), 400

            expires_in = None
            if session.expires_at:
                expires_in = int((session.expires_at - datetime.now()).total_seconds())
            return jsonify({
                'success': True,
                'access_token': session.access_token,
                'expires_in': expires_in,
            }), 200

        @self.app.route('/api/youtube/token/status', methods=['GET'])
        def youtube_token_status():
            session = self._secrets().load_session('youtube')
            if not session.access_token:
                return jsonify({'valid': False, 'reason': 'No token available'}), 200
            if session.expires_at is None:
                return jsonify({'valid': False, 'expiry': None, 'reason': 'Token expiry unknown'}), 200

            valid = session.expires_at > datetime.now() + TOKEN_VALIDITY_BUFFER
            return jsonify({
                'valid': valid,
                'expiry': session.expires_at.isoformat(),
                'reason': 'Token is valid' if valid else 'Token is expired',
            }), 200

    def run(self) -> None:
        """Run the HTTP server."""
        self.logger.info(f"Starting corelist HTTP server on {self.host}:{self.port}")
        self.app.run(
            host=self.host,
            port=self.port,
            debug=self.debug
        )


def create_app(secret_manager: Optional[SecretManager] = None) -> Flask:
    """Create Flask app for testing."""
    server = HTTPServer(secret_manager=secret_manager)
    return server.app
