import os
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Any, List, Optional
from pathlib import Path

from dotenv import dotenv_values


class ConfigError(Exception):
    """Configuration error."""
    pass


SPOTIFY_SCOPES = [
    'playlist-read-private',      # Read private playlists
    'playlist-modify-public',     # Create/modify public playlists
    'playlist-modify-private',    # Create/modify private playlists
]

YOUTUBE_SCOPES = [
    'https://www.googleapis.com/auth/youtube',
]


@dataclass
class ProviderSession:
    """Credentials for one provider, owned by the provider that refreshes them."""

    provider: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and datetime.now() >= self.expires_at

    def update(self, access_token: str, refresh_token: Optional[str] = None,
               expires_at: Optional[datetime] = None) -> None:
        self.access_token = access_token
        if refresh_token:
            self.refresh_token = refresh_token
        if expires_at:
            self.expires_at = expires_at

    def to_json(self) -> Dict[str, Any]:
        data = {
            'access_token': self.access_token,
            'refresh_token': self.refresh_token,
        }
        if self.expires_at:
            data['expires_at'] = self.expires_at.isoformat()
        return data

    @classmethod
    def from_json(cls, provider: str, data: Dict[str, Any]) -> "ProviderSession":
        expires_at = data.get('expires_at')
        if isinstance(expires_at, (int, float)):
            expires_at = datetime.fromtimestamp(expires_at)
        elif isinstance(expires_at, str):
            expires_at = datetime.fromisoformat(expires_at)
        return cls(
            provider=provider,
            access_token=data.get('access_token'),
            refresh_token=data.get('refresh_token'),
            expires_at=expires_at,
        )


class SecretManager:
    """Manages application secrets and configuration.

    Values are looked up in the process environment first, then in the ``.env`` file of
    the config directory. Provider tokens persist in ``tokens.json`` in the same place.
    """

    def __init__(self, config_dir: Optional[str] = None):
        """Initialize secret manager."""
        config_dir = config_dir or os.getenv('CORELIST_CONFIG_DIR')
        self.config_dir = Path(config_dir) if config_dir else Path.home() / '.corelist'
        self.config_dir.mkdir(parents=True, exist_ok=True)

        self.tokens_file = self.config_dir / 'tokens.json'
        self.env_file = self.config_dir / '.env'

    def get_spotify_scopes(self) -> List[str]:
        """Get minimal required Spotify scopes."""
        return list(SPOTIFY_SCOPES)

    def get_spotify_scope_string(self) -> str:
        """Get Spotify scopes as space-separated string."""
        return ' '.join(self.get_spotify_scopes())

    def validate_spotify_scopes(self, scopes: str) -> bool:
        """Validate that provided scopes include all required ones."""
        return not self.get_missing_spotify_scopes(scopes)

    def get_missing_spotify_scopes(self, scopes: str) -> List[str]:
        """Get list of missing required Spotify scopes."""
        provided_scopes = set((scopes or '').split())
        return [s for s in self.get_spotify_scopes() if s not in provided_scopes]

    def load_tokens(self) -> Dict[str, Any]:
        """Load tokens from tokens.json file."""
        if not self.tokens_file.exists():
            return {}

        try:
            with open(self.tokens_file, 'r') as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            raise ConfigError(f"Failed to load tokens from {self.tokens_file}: {e}")

    def save_tokens(self, tokens: Dict[str, Any]) -> None:
        """Merge tokens into tokens.json file."""
        existing_tokens = self.load_tokens()
        existing_tokens.update(tokens)

        try:
            with open(self.tokens_file, 'w') as f:
                json.dump(existing_tokens, f, indent=2, ensure_ascii=False)
        except IOError as e:
            raise ConfigError(f"Failed to save tokens to {self.tokens_file}: {e}")

    def load_env_vars(self) -> Dict[str, str]:
        """Load variables from the config directory .env file."""
        if not self.env_file.exists():
            return {}
        try:
            return {k: v for k, v in dotenv_values(self.env_file).items() if v is not None}
        except (IOError, UnicodeDecodeError) as e:
            raise ConfigError(f"Failed to load .env file {self.env_file}: {e}")

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Look up a setting in the environment, then in the .env file."""
        value = os.getenv(key)
        if value is not None and str(value).strip():
            return value
        value = self.load_env_vars().get(key)
        if value is not None and str(value).strip():
            return value
        return default

    def load_session(self, provider: str) -> ProviderSession:
        """Build a session from ``<PROVIDER>_ACCESS_TOKEN``/``_REFRESH_TOKEN`` or tokens.json."""
        stored = self.load_tokens().get(provider, {})
        session = ProviderSession.from_json(provider, stored)
        access = self.get(f"{provider.upper()}_ACCESS_TOKEN")
        refresh = self.get(f"{provider.upper()}_REFRESH_TOKEN")
        if access:
            session.access_token = access
            session.expires_at = None
        if refresh:
            session.refresh_token = refresh
        return session

    def save_session(self, session: ProviderSession) -> None:
        """Persist a provider session into tokens.json."""
        self.save_tokens({session.provider: session.to_json()})

    def get_spotify_client_config(self) -> Dict[str, str]:
        """Get Spotify client configuration."""
        client_id = self.get('SPOTIFY_CLIENT_ID')
        client_secret = self.get('SPOTIFY_CLIENT_SECRET')
        redirect_uri = self.get('SPOTIFY_REDIRECT_URI', 'http://localhost:3001/callback')

        if not client_id:
            raise ConfigError("SPOTIFY_CLIENT_ID not found in environment")
        if not client_secret:
            raise ConfigError("SPOTIFY_CLIENT_SECRET not found in environment")

        return {
            'client_id': client_id,
            'client_secret': client_secret,
            'redirect_uri': redirect_uri
        }

    def get_youtube_client_config(self) -> Dict[str, Optional[str]]:
        """Get YouTube (Google OAuth) client configuration."""
        client_id = self.get('YOUTUBE_CLIENT_ID')
        client_secret = self.get('YOUTUBE_CLIENT_SECRET')

        if not client_id:
            raise ConfigError("YOUTUBE_CLIENT_ID not found in environment")
        if not client_secret:
            raise ConfigError("YOUTUBE_CLIENT_SECRET not found in environment")

        return {
            'client_id': client_id,
            'client_secret': client_secret,
            'api_key': self.get('YOUTUBE_API_KEY'),
        }

    def get_trello_config(self) -> Dict[str, Any]:
        """Get Trello board ids and optional API credentials."""
        board_ids = self.get('TRELLO_BOARD_IDS', '') or ''
        return {
            'board_ids': [b.strip() for b in board_ids.split(',') if b.strip()],
            'api_key': self.get('TRELLO_API_KEY'),
            'token': self.get('TRELLO_TOKEN'),
        }

    def get_matcher_settings(self) -> Dict[str, float]:
        """Get default match threshold and song weight."""
        try:
            threshold = float(self.get('CORELIST_MATCH_THRESHOLD', '0.6'))
            song_weight = float(self.get('CORELIST_SONG_WEIGHT', '0.7'))
        except ValueError as e:
            raise ConfigError(f"Invalid matcher setting: {e}")
        return {
            'threshold': threshold,
            'song_weight': song_weight,
        }

    def validate_configuration(self) -> Dict[str, bool]:
        """Report which pieces of configuration are present."""
        tokens = self.load_tokens()
        return {
            'spotify_client_id': bool(self.get('SPOTIFY_CLIENT_ID')),
            'spotify_client_secret': bool(self.get('SPOTIFY_CLIENT_SECRET')),
            'spotify_tokens': bool(self.get('SPOTIFY_ACCESS_TOKEN') or tokens.get('spotify', {}).get('access_token')),
            'youtube_client_id': bool(self.get('YOUTUBE_CLIENT_ID')),
            'youtube_tokens': bool(self.get('YOUTUBE_ACCESS_TOKEN') or tokens.get('youtube', {}).get('access_token')),
            'trello_boards': bool(self.get_trello_config()['board_ids']),
        }

    def get_config_summary(self) -> Dict[str, Any]:
        """Get configuration summary (without sensitive data)."""
        return {
            'config_dir': str(self.config_dir),
            'tokens_file': str(self.tokens_file),
            'env_file': str(self.env_file),
            'validation': self.validate_configuration(),
            'spotify_scopes': self.get_spotify_scopes(),
        }

    def clear_tokens(self) -> None:
        """Clear all stored tokens."""
        if self.tokens_file.exists():
            self.tokens_file.unlink()
