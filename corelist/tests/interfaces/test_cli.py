import argparse
import io
import json
import os
from unittest.mock import Mock, patch

import pytest

from corelist.crosscutting.config import SecretManager
from corelist.domain.entities import Candidate
from corelist.domain.errors import PermanentFailure
from corelist.interfaces.cli import CLI
from corelist.tests.fakes import InMemoryProvider


def _provider():
    provider = InMemoryProvider()
    provider.add_collection("Core Ed", [
        Candidate(name="Perfect", artists=["Ed Sheeran"], uri="uri:perfect", id="t1"),
        Candidate(name="Shape of You", artists=["Ed Sheeran"], uri="uri:shape", id="t2"),
    ])
    return provider


class TestCLIParser:
    """Tests for argument parsing and validation."""

    def setup_method(self):
        self.cli = CLI(secret_manager=Mock())

    def test_reconcile_arguments(self):
        args = self.cli.parser.parse_args([
            'reconcile', '--platform', 'spotify', '--playlist', 'Party', '--songs', 'songs.txt',
            '--mode', 'reset', '--threshold', '0.4', '--dry-run',
        ])

        assert args.command == 'reconcile'
        assert args.platform == 'spotify'
        assert args.mode == 'reset'
        assert args.threshold == 0.4
        assert args.song_weight is None
        assert args.dry_run is True
        assert args.report_path == 'reports/'

    def test_mode_defaults_to_append(self):
        args = self.cli.parser.parse_args(['reconcile', '--platform', 'youtube', '--playlist', 'P', '--songs', '-'])
        assert args.mode == 'append'

    def test_unknown_mode_is_rejected(self):
        with pytest.raises(SystemExit):
            self.cli.parser.parse_args(['reconcile', '--platform', 'spotify', '--playlist', 'P', '--mode', 'merge'])

    def test_song_source_is_required(self):
        args = argparse.Namespace(command='match', songs=None, trello_board=None, threshold=None, song_weight=None)
        with pytest.raises(ValueError, match="--songs or --trello-board"):
            self.cli._validate_arguments(args)

    def test_song_sources_are_exclusive(self):
        args = argparse.Namespace(command='match', songs='a.txt', trello_board='b1', threshold=None, song_weight=None)
        with pytest.raises(ValueError, match="mutually exclusive"):
            self.cli._validate_arguments(args)

    def test_threshold_range(self):
        args = argparse.Namespace(command='match', songs='a.txt', trello_board=None, threshold=1.5, song_weight=None)
        with pytest.raises(ValueError, match="--threshold"):
            self.cli._validate_arguments(args)

    def test_no_command_exits(self):
        with pytest.raises(SystemExit) as exc_info:
            self.cli.run([])
        assert exc_info.value.code == 1


class TestCLIProviders:
    """Tests for provider and matcher construction from configuration."""

    @pytest.fixture(autouse=True)
    def _secrets(self, tmp_path):
        self.secrets = SecretManager(str(tmp_path))
        self.cli = CLI(secret_manager=self.secrets)

    @patch.dict(os.environ, {
        'SPOTIFY_ACCESS_TOKEN': 'access', 'SPOTIFY_REFRESH_TOKEN': 'refresh',
        'SPOTIFY_CLIENT_ID': 'cid', 'SPOTIFY_CLIENT_SECRET': 'secret',
    })
    @patch('corelist.interfaces.cli.SpotifyProvider')
    def test_create_spotify_provider(self, mock_provider_class):
        provider = self.cli._create_provider('spotify')

        assert provider is mock_provider_class.return_value
        session = mock_provider_class.call_args.args[0]
        assert session.access_token == 'access'
        assert session.refresh_token == 'refresh'
        assert mock_provider_class.call_args.kwargs['client_id'] == 'cid'
        assert mock_provider_class.call_args.kwargs['secret_manager'] is self.secrets

    @patch.dict(os.environ, {'YOUTUBE_ACCESS_TOKEN': 'yt', 'YOUTUBE_API_KEY': 'key'})
    @patch('corelist.interfaces.cli.YouTubeProvider')
    def test_create_youtube_provider_without_client_config(self, mock_provider_class):
        self.cli._create_provider('youtube')

        kwargs = mock_provider_class.call_args.kwargs
        assert kwargs['client_secret'] is None
        assert kwargs['api_key'] == 'key'

    def test_missing_access_token(self):
        with pytest.raises(ValueError, match="SPOTIFY_ACCESS_TOKEN"):
            self.cli._create_provider('spotify')

    def test_trello_cannot_hold_playlists(self):
        with pytest.raises(PermanentFailure):
            self.cli._create_provider('trello')

    @patch.dict(os.environ, {'CORELIST_MATCH_THRESHOLD': '0.4'})
    def test_matcher_settings_from_config_and_flags(self):
        args = argparse.Namespace(threshold=None, song_weight=0.5)

        matcher = self.cli._create_matcher(args)

        assert matcher.config.threshold == 0.4
        assert matcher.config.song_weight == 0.5

    def test_trello_source_needs_boards(self):
        with pytest.raises(ValueError, match="TRELLO_BOARD_IDS"):
            self.cli._create_trello_source()

    def test_read_songs_from_stdin(self, monkeypatch):
        monkeypatch.setattr('sys.stdin', io.StringIO("Perfect\n\n  - Shape of You\n"))
        args = argparse.Namespace(trello_board=None, songs='-')

        assert self.cli._read_songs(args) == ['Perfect', 'Shape of You']


class TestCLICommands:
    """Tests for running commands end to end against an in-memory provider."""

    @pytest.fixture(autouse=True)
    def _workspace(self, tmp_path):
        self.tmp_path = tmp_path
        self.songs_file = tmp_path / 'songs.txt'
        self.songs_file.write_text("Perfect\n__Party__\nShape of You\nZzz Qqq\n", encoding='utf-8')
        self.provider = _provider()
        self.cli = CLI(secret_manager=SecretManager(str(tmp_path / 'config')))
        self.cli._create_provider = Mock(return_value=self.provider)

    def test_reconcile_creates_playlist_and_writes_report(self, capsys):
        self.cli.run([
            'reconcile', '--platform', 'spotify', '--playlist', 'Party',
            '--songs', str(self.songs_file), '--job-id', 'job1',
            '--report-path', str(self.tmp_path / 'reports'),
        ])

        out = capsys.readouterr().out
        assert 'Playlist created successfully!' in out
        assert '  not found: Zzz Qqq' in out
        playlist = self.provider.find_playlist_by_name('Party')
        assert self.provider.entries[playlist.id] == ['uri:perfect', 'uri:shape']

        report = json.loads((self.tmp_path / 'reports' / 'reconcile_report_job1.json').read_text())
        assert report['header']['jobId'] == 'job1'
        assert report['header']['status'] == 'created'
        assert report['playlist']['totals']['added'] == 2
        assert [r['status'] for r in report['requests']] == ['added', 'added', 'not_found']

    def test_reconcile_dry_run(self, capsys):
        self.cli.run([
            'reconcile', '--platform', 'spotify', '--playlist', 'Party', '--dry-run',
            '--songs', str(self.songs_file), '--report-path', str(self.tmp_path / 'reports'),
        ])

        assert capsys.readouterr().out.startswith('DRY-RUN: ')
        assert self.provider.find_playlist_by_name('Party') is None

    def test_reconcile_failure_exits_with_error(self):
        self.cli._create_provider.side_effect = ValueError("SPOTIFY_ACCESS_TOKEN is required")

        with pytest.raises(SystemExit) as exc_info:
            self.cli.run([
                'reconcile', '--platform', 'spotify', '--playlist', 'Party', '--songs', str(self.songs_file),
            ])
        assert exc_info.value.code == 1

    def test_invalid_threshold_exits_with_error(self):
        with pytest.raises(SystemExit) as exc_info:
            self.cli.run([
                'match', '--platform', 'spotify', '--songs', str(self.songs_file), '--threshold', '2',
            ])
        assert exc_info.value.code == 1

    def test_match_prints_results(self, capsys):
        self.cli.run(['match', '--platform', 'spotify', '--songs', str(self.songs_file)])

        out = capsys.readouterr().out
        assert 'Perfect -> Perfect - Ed Sheeran' in out
        assert 'Zzz Qqq -> not found' in out
        assert 'Matched 2/3 (67%)' in out
        assert self.provider.calls == []

    def test_list_marks_core_playlists(self, capsys):
        self.provider.add_playlist('Party', [])

        self.cli.run(['list', '--platform', 'spotify'])

        out = capsys.readouterr().out
        assert 'Core Ed [CORE]' in out
        assert 'Party (tracks' in out

    @patch('corelist.interfaces.cli.TrelloSource')
    def test_songs_prints_trello_list(self, mock_source_class, capsys):
        mock_source_class.return_value.song_list_text.return_value = '__Party__\nShivers\n'

        self.cli.run(['songs', '--trello-board', 'b1', '--trello-lists', 'l1', 'l2'])

        mock_source_class.assert_called_once_with(['b1'], api_key=None, token=None)
        mock_source_class.return_value.song_list_text.assert_called_once_with('b1', ['l1', 'l2'])
        assert 'Shivers' in capsys.readouterr().out


class TestCLIConfig:
    """Tests for the config command."""

    @pytest.fixture(autouse=True)
    def _secrets(self, tmp_path):
        self.secrets = SecretManager(str(tmp_path))
        self.cli = CLI(secret_manager=self.secrets)

    @patch.dict(os.environ, {'SPOTIFY_CLIENT_ID': 'cid'})
    def test_prints_summary(self, capsys):
        self.cli.run(['config'])

        out = capsys.readouterr().out
        assert f"Config directory: {self.secrets.config_dir}" in out
        assert '  spotify_client_id: ok' in out
        assert 'playlist-modify-private' in out

    def test_clear_tokens(self, capsys):
        self.secrets.save_tokens({'spotify': {'access_token': 'old'}})

        self.cli.run(['config', '--clear-tokens'])

        assert not self.secrets.tokens_file.exists()
        assert 'Cleared stored tokens' in capsys.readouterr().out

    def test_granted_scopes(self, capsys):
        self.cli.run(['config', '--check-scopes', self.secrets.get_spotify_scope_string()])

        assert 'All required Spotify scopes granted' in capsys.readouterr().out

    def test_missing_scopes_exit_with_error(self):
        with pytest.raises(SystemExit) as exc_info:
            self.cli.run(['config', '--check-scopes', 'playlist-read-private'])
        assert exc_info.value.code == 1
