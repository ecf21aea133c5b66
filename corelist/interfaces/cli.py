import argparse
import logging
import signal
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence

from dotenv import load_dotenv

from corelist.application.matching import SongMatcher, match_statistics
from corelist.application.pipeline import ReconcilePipeline, collect_core_library
from corelist.crosscutting.config import ConfigError, ProviderSession, SecretManager
from corelist.crosscutting.logging import (
    CorrelationContext, log_error, log_run_complete, log_run_start, setup_logging,
)
from corelist.crosscutting.reporting import build_report, write_report
from corelist.domain.entities import UpdatePolicy
from corelist.domain.errors import PermanentFailure
from corelist.domain.normalization import parse_song_requests
from corelist.domain.ports import MusicProvider
from corelist.infrastructure.providers.spotify import SpotifyProvider
from corelist.infrastructure.providers.trello import TrelloSource
from corelist.infrastructure.providers.youtube import YouTubeProvider

logger = logging.getLogger(__name__)

LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR']


class CLI:
    """Command Line Interface for corelist."""

    def __init__(self, secret_manager: Optional[SecretManager] = None):
        self.parser = self._create_parser()
        self.secret_manager = secret_manager
        self._start_time = None
        self._setup_signal_handlers()

    def _create_parser(self) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            prog='corelist',
            description='Build playlists from song lists using your "core" playlists'
        )
        subparsers = parser.add_subparsers(dest='command', help='Available commands')

        reconcile_parser = subparsers.add_parser('reconcile', help='Create or update a playlist from a song list')
        reconcile_parser.add_argument(
            '--platform',
            choices=['spotify', 'youtube', 'trello'],
            required=True,
            help='Platform holding the core playlists and the destination playlist'
        )
        reconcile_parser.add_argument('--playlist', required=True, help='Destination playlist name (exact match)')
        self._add_song_source_arguments(reconcile_parser)
        reconcile_parser.add_argument(
            '--mode',
            choices=[p.value for p in UpdatePolicy],
            default=UpdatePolicy.APPEND.value,
            help='How an existing playlist is updated (default: append)'
        )
        self._add_matcher_arguments(reconcile_parser)
        reconcile_parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Run in dry-run mode (no actual changes)'
        )
        reconcile_parser.add_argument('--job-id', help='Unique job identifier for this run')
        reconcile_parser.add_argument(
            '--report-path',
            default='reports/',
            help='Path to save reports (default: reports/)'
        )
        reconcile_parser.add_argument('--log-file', help='Also write logs to this file')
        self._add_log_level_argument(reconcile_parser)

        match_parser = subparsers.add_parser('match', help='Show which songs match, without changing anything')
        match_parser.add_argument(
            '--platform',
            choices=['spotify', 'youtube', 'trello'],
            required=True,
            help='Where the core library comes from'
        )
        self._add_song_source_arguments(match_parser)
        self._add_matcher_arguments(match_parser)
        self._add_log_level_argument(match_parser)

        list_parser = subparsers.add_parser('list', help='List playlists (or Trello boards)')
        list_parser.add_argument(
            '--platform',
            choices=['spotify', 'youtube', 'trello'],
            required=True,
            help='Platform to list playlists from'
        )
        self._add_log_level_argument(list_parser)

        songs_parser = subparsers.add_parser('songs', help='Print the song list composed from Trello lists')
        songs_parser.add_argument('--trello-board', required=True, help='Trello board id')
        songs_parser.add_argument('--trello-lists', nargs='+', help='Trello list ids (default: all lists)')
        self._add_log_level_argument(songs_parser)

        config_parser = subparsers.add_parser('config', help='Show configuration status and manage stored tokens')
        config_parser.add_argument(
            '--check-scopes',
            metavar='SCOPES',
            help='Space-separated Spotify scopes granted to a token; fails if any required one is missing'
        )
        config_parser.add_argument('--clear-tokens', action='store_true', help='Delete stored provider tokens')
        self._add_log_level_argument(config_parser)

        return parser

    @staticmethod
    def _add_song_source_arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument('--songs', help="File with one song per line ('-' reads stdin)")
        parser.add_argument('--trello-board', help='Trello board whose lists hold the songs')
        parser.add_argument('--trello-lists', nargs='+', help='Trello list ids (default: all lists)')

    @staticmethod
    def _add_matcher_arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument('--threshold', type=float, help='Match threshold in [0, 1] (default: 0.6)')
        parser.add_argument('--song-weight', type=float, help='Weight of the song title in [0, 1] (default: 0.7)')

    @staticmethod
    def _add_log_level_argument(parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            '--log-level',
            choices=LOG_LEVELS,
            default='INFO',
            help='Set logging level'
        )

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            logger.warning(f"Received signal {signum}, shutting down gracefully...")
            self._cleanup_resources()
            sys.exit(130)

        signal.signal(signal.SIGTERM, signal_handler)

    def _cleanup_resources(self) -> None:
        if self._start_time:
            duration = time.time() - self._start_time
            logger.info(f"CLI execution time: {duration:.2f}s")

    def _validate_arguments(self, args: argparse.Namespace) -> None:
        if args.command in ('reconcile', 'match'):
            if not args.songs and not args.trello_board:
                raise ValueError("Either --songs or --trello-board is required")
            if args.songs and args.trello_board:
                raise ValueError("--songs and --trello-board are mutually exclusive")
            for name in ('threshold', 'song_weight'):
                value = getattr(args, name)
                if value is not None and not 0.0 <= value <= 1.0:
                    raise ValueError(f"--{name.replace('_', '-')} must be between 0 and 1")

    def _create_job_id(self) -> str:
        return f"corelist_{datetime.now().strftime('%Y%m%d_%H%M%S')}"

    def _secrets(self) -> SecretManager:
        if self.secret_manager is None:
            self.secret_manager = SecretManager()
        return self.secret_manager

    def _load_session(self, platform: str) -> ProviderSession:
        session = self._secrets().load_session(platform)
        if not session.access_token:
            raise ValueError(f"{platform.upper()}_ACCESS_TOKEN is required (environment, .env or tokens.json)")
        return session

    def _create_provider(self, platform: str) -> MusicProvider:
        """Create a writable music provider."""
        secrets = self._secrets()
        if platform == 'spotify':
            session = self._load_session('spotify')
            try:
                client = secrets.get_spotify_client_config()
            except ConfigError:
                logger.warning("Spotify client credentials missing; token refresh is disabled")
                client = {}
            return SpotifyProvider(
                session,
                client_id=client.get('client_id'),
                client_secret=client.get('client_secret'),
                redirect_uri=client.get('redirect_uri'),
                secret_manager=secrets,
            )
        if platform == 'youtube':
            session = self._load_session('youtube')
            try:
                client = secrets.get_youtube_client_config()
            except ConfigError:
                logger.warning("YouTube client credentials missing; token refresh is disabled")
                client = {'api_key': secrets.get('YOUTUBE_API_KEY')}
            return YouTubeProvider(
                session,
                client_id=client.get('client_id'),
                client_secret=client.get('client_secret'),
                api_key=client.get('api_key'),
                secret_manager=secrets,
            )
        if platform == 'trello':
            raise PermanentFailure("Trello is a song source only and cannot hold playlists")
        raise ValueError(f"Unsupported platform: {platform}")

    def _create_trello_source(self, board_ids: Optional[Sequence[str]] = None) -> TrelloSource:
        config = self._secrets().get_trello_config()
        boards = list(board_ids) if board_ids else config['board_ids']
        if not boards:
            raise ValueError("TRELLO_BOARD_IDS is required")
        return TrelloSource(boards, api_key=config['api_key'], token=config['token'])

    def _create_matcher(self, args: argparse.Namespace) -> SongMatcher:
        settings = self._secrets().get_matcher_settings()
        matcher = SongMatcher()
        matcher.set_threshold(args.threshold if args.threshold is not None else settings['threshold'])
        matcher.set_song_weight(args.song_weight if args.song_weight is not None else settings['song_weight'])
        return matcher

    def _read_songs(self, args: argparse.Namespace) -> List[str]:
        if args.trello_board:
            text = self._create_trello_source([args.trello_board]).song_list_text(
                args.trello_board, args.trello_lists
            )
        elif args.songs == '-':
            text = sys.stdin.read()
        else:
            text = Path(args.songs).read_text(encoding='utf-8')
        return parse_song_requests(text)

    def _reconcile(self, args: argparse.Namespace) -> None:
        job_id = args.job_id or self._create_job_id()
        started_at = datetime.now(timezone.utc)

        with CorrelationContext(job_id=job_id):
            provider = self._create_provider(args.platform)
            songs = self._read_songs(args)
            matcher = self._create_matcher(args)

            if args.dry_run:
                logger.info(f"Starting DRY-RUN reconcile (job: {job_id})")
            log_run_start(logger, job_id, args.platform, args.playlist, len(songs),
                          mode=args.mode, dry_run=args.dry_run)

            pipeline = ReconcilePipeline(provider, matcher=matcher)
            result = pipeline.reconcile(songs, args.playlist, policy=UpdatePolicy(args.mode),
                                        dry_run=args.dry_run)

            log_run_complete(logger, job_id, len(result.matched), len(result.unmatched),
                             result.added_count, skipped=result.skipped_count,
                             failed=result.failed_count, status=result.status.value,
                             duration_ms=result.duration_ms)

            report = build_report(result, job_id, args.platform, started_at, policy=args.mode)
            report_file = write_report(report, Path(args.report_path) / f"reconcile_report_{job_id}.json")
            logger.info(f"Report saved to: {report_file}")

        print(result.message)
        if result.playlist and result.playlist.url:
            print(f"Playlist: {result.playlist.url}")
        print(f"Matched {len(result.matched)}, added {result.added_count}, "
              f"skipped {result.skipped_count}, failed {result.failed_count}")
        for song in result.unmatched:
            print(f"  not found: {song}")

    def _match(self, args: argparse.Namespace) -> None:
        songs = self._read_songs(args)
        matcher = self._create_matcher(args)

        if args.platform == 'trello':
            source = self._create_trello_source()
            library = collect_core_library(source, playlist_ids=source.board_ids)
        else:
            library = collect_core_library(self._create_provider(args.platform))

        batch = matcher.match_all(songs, library)
        for match in batch.matched:
            artists = ', '.join(match.matched.artists)
            print(f"{match.input} -> {match.matched.name} - {artists} ({match.score:.2f})")
        for song in batch.unmatched:
            print(f"{song} -> not found")

        stats = match_statistics(batch)
        print(f"Matched {stats['matched']}/{stats['total']} ({stats['match_rate']:.0%})")

    def _list_playlists(self, args: argparse.Namespace) -> None:
        if args.platform == 'trello':
            source = self._create_trello_source()
        else:
            source = self._create_provider(args.platform)

        print(f"Available playlists from {args.platform}:")
        print("-" * 50)
        for playlist in source.list_owned_playlists():
            core_indicator = " [CORE]" if playlist.is_core else ""
            print(f"{playlist.id}: {playlist.name}{core_indicator} (tracks: {playlist.track_count})")

    def _print_songs(self, args: argparse.Namespace) -> None:
        source = self._create_trello_source([args.trello_board])
        print(source.song_list_text(args.trello_board, args.trello_lists))

    def _show_config(self, args: argparse.Namespace) -> None:
        secrets = self._secrets()
        if args.clear_tokens:
            secrets.clear_tokens()
            print(f"Cleared stored tokens: {secrets.tokens_file}")

        summary = secrets.get_config_summary()
        print(f"Config directory: {summary['config_dir']}")
        for name, present in summary['validation'].items():
            print(f"  {name}: {'ok' if present else 'missing'}")
        print(f"Required Spotify scopes: {' '.join(summary['spotify_scopes'])}")

        if args.check_scopes is not None:
            if not secrets.validate_spotify_scopes(args.check_scopes):
                missing = secrets.get_missing_spotify_scopes(args.check_scopes)
                raise ConfigError(f"Missing Spotify scopes: {', '.join(missing)}")
            print("All required Spotify scopes granted")

    def run(self, argv: Optional[Sequence[str]] = None) -> None:
        """Run the CLI."""
        self._start_time = time.time()
        args = self.parser.parse_args(argv)

        if not args.command:
            self.parser.print_help()
            sys.exit(1)

        setup_logging(args.log_level, log_file=getattr(args, 'log_file', None))

        try:
            self._validate_arguments(args)

            if args.command == 'reconcile':
                self._reconcile(args)
            elif args.command == 'match':
                self._match(args)
            elif args.command == 'list':
                self._list_playlists(args)
            elif args.command == 'songs':
                self._print_songs(args)
            elif args.command == 'config':
                self._show_config(args)
        except KeyboardInterrupt:
            logger.warning("Operation cancelled by user")
            sys.exit(130)
        except Exception as e:
            log_error(logger, f"{args.command} failed", e)
            sys.exit(1)
        finally:
            self._cleanup_resources()


def main():
    """Main entry point."""
    load_dotenv()
    cli = CLI()
    cli.run()


if __name__ == '__main__':
    main()
