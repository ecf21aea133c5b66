import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence, Union

from corelist.application.diff import compute_diff
from corelist.application.matching import BatchMatchResult, SongMatcher, match_statistics
from corelist.crosscutting.logging import CorrelationContext, log_with_fields
from corelist.domain.entities import (
    ApplyResult, Candidate, DiffPlan, ItemOutcome, MatchResult, Playlist, UpdatePolicy,
)
from corelist.domain.errors import AuthExpired, LibraryUnavailable, PlaylistStoreUnavailable
from corelist.domain.normalization import parse_song_requests
from corelist.domain.ports import CandidateSource, MusicProvider


logger = logging.getLogger(__name__)


class ReconcileStatus(str, Enum):
    """Overall outcome of one reconciliation run."""

    CREATED = "created"
    UPDATED = "updated"
    RESET = "reset"
    NO_CANDIDATES = "no_candidates"
    NO_MATCHES = "no_matches"


@dataclass
class ReconcileResult:
    """Structured result of reconciling a song list into a destination playlist."""

    status: ReconcileStatus
    playlist_name: str
    matched: List[MatchResult] = field(default_factory=list)
    unmatched: List[str] = field(default_factory=list)
    playlist: Optional[Playlist] = None
    plan: Optional[DiffPlan] = None
    applied: Optional[ApplyResult] = None
    is_update: bool = False
    dry_run: bool = False
    library_size: int = 0
    failed_sources: List[str] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def added_count(self) -> int:
        return self.plan.added_count if self.plan else 0

    @property
    def skipped_count(self) -> int:
        return self.plan.skipped_count if self.plan else 0

    @property
    def failed_count(self) -> int:
        return self.applied.failed if self.applied else 0

    @property
    def message(self) -> str:
        if self.status is ReconcileStatus.NO_CANDIDATES:
            return 'No playlists containing "core" found.'
        if self.status is ReconcileStatus.NO_MATCHES:
            return "No matching songs found in your core playlists."
        prefix = "DRY-RUN: " if self.dry_run else ""
        if self.status is ReconcileStatus.RESET:
            return f"{prefix}Playlist reset! Added {self.added_count} song(s)."
        if self.status is ReconcileStatus.UPDATED:
            return f"{prefix}Playlist updated! Added {self.added_count} new song(s)."
        return f"{prefix}Playlist created successfully!"


def collect_core_library(source: CandidateSource,
                         playlist_ids: Optional[Sequence[str]] = None,
                         failed_sources: Optional[List[str]] = None) -> List[Candidate]:
    """Concatenate the candidates of every core collection visible to the user.

    Collections are the owned ones whose name contains "core", or exactly ``playlist_ids``
    when given. A collection that fails to load is skipped with a warning; if every one
    fails, ``LibraryUnavailable`` is raised. Duplicates across collections are kept.
    """
    try:
        playlists = list(source.list_owned_playlists())
    except AuthExpired:
        raise
    except Exception as e:
        raise LibraryUnavailable(f"Failed to list {source.name} collections: {e}") from e

    if playlist_ids:
        wanted = set(playlist_ids)
        core = [p for p in playlists if p.id in wanted]
    else:
        core = [p for p in playlists if p.is_core and p.is_owned]

    if not core:
        logger.info(f"No core collections found on {source.name}")
        return []

    logger.info(f"Found {len(core)} core collection(s) on {source.name}, fetching candidates...")

    library: List[Candidate] = []
    failures = 0
    for playlist in core:
        try:
            library.extend(source.list_candidates(playlist.id))
        except AuthExpired:
            raise
        except Exception as e:
            failures += 1
            if failed_sources is not None:
                failed_sources.append(playlist.name)
            logger.warning(f"Failed to fetch core collection '{playlist.name}' ({playlist.id}): {e}")

    if failures == len(core):
        raise LibraryUnavailable(f"All {failures} core collection(s) failed to load from {source.name}")

    return library


class PlanExecutor:
    """Realizes a DiffPlan on a provider, chunked to the provider's batch size.

    Failed chunks are recorded and skipped; nothing already applied is rolled back.
    """

    def __init__(self, provider: MusicProvider, batch_size: Optional[int] = None):
        self.provider = provider
        self.batch_size = batch_size or getattr(provider, 'max_batch_size', 100)

    def split_into_batches(self, uris: Sequence[str]) -> List[List[str]]:
        return [list(uris[i:i + self.batch_size]) for i in range(0, len(uris), self.batch_size)]

    def _call(self, action: str, func: Callable[[], List[ItemOutcome]], uris: List[str]) -> List[ItemOutcome]:
        try:
            return list(func())
        except AuthExpired:
            raise
        except Exception as e:
            logger.warning(f"Failed to {action} {len(uris)} item(s): {e}")
            return [ItemOutcome(action=action, uris=uris, ok=False, reason=str(e))]

    def _add_all(self, playlist_id: str, uris: Sequence[str], result: ApplyResult) -> None:
        for batch in self.split_into_batches(uris):
            result.outcomes.extend(
                self._call("add", lambda b=batch: self.provider.add_items(playlist_id, b), batch)
            )

    def apply(self, playlist_id: str, plan: DiffPlan) -> ApplyResult:
        result = ApplyResult()
        if plan.is_empty:
            return result

        if plan.policy is UpdatePolicy.RESET and plan.to_remove:
            if self._supports_replace():
                first = list(plan.to_add[:self.batch_size])
                result.outcomes.extend(
                    self._call("replace", lambda: self.provider.replace_items(playlist_id, first), first)
                )
                self._add_all(playlist_id, plan.to_add[self.batch_size:], result)
                return result

            # dict.fromkeys keeps first-seen order while dropping repeats
            unique_removals = list(dict.fromkeys(plan.to_remove))
            for batch in self.split_into_batches(unique_removals):
                result.outcomes.extend(
                    self._call("remove", lambda b=batch: self.provider.remove_items(playlist_id, b), batch)
                )
            self._add_all(playlist_id, plan.to_add, result)
            return result

        self._add_all(playlist_id, plan.to_add, result)
        return result

    def _supports_replace(self) -> bool:
        return bool(getattr(self.provider, 'supports_replace', False))


class ReconcilePipeline:
    """Fetch the core library, match requests, diff the destination and apply the diff."""

    def __init__(self,
                 provider: MusicProvider,
                 matcher: Optional[SongMatcher] = None,
                 library_source: Optional[CandidateSource] = None,
                 batch_size: Optional[int] = None):
        """Initialize the pipeline.

        Args:
            provider: Destination platform (playlists are read and written here)
            matcher: Song matcher; a default one is created when omitted
            library_source: Where core candidates come from; defaults to ``provider``
            batch_size: Mutation chunk size; defaults to the provider's maximum
        """
        self.provider = provider
        self.matcher = matcher or SongMatcher()
        self.library_source = library_source or provider
        self.executor = PlanExecutor(provider, batch_size=batch_size)

    def match(self, requests: Sequence[str], library_ids: Optional[Sequence[str]] = None,
              failed_sources: Optional[List[str]] = None):
        """Fetch the library once and resolve every request against it."""
        with CorrelationContext(stage='fetch_library'):
            library = collect_core_library(self.library_source, library_ids, failed_sources)
        with CorrelationContext(stage='match'):
            batch = self.matcher.match_all(requests, library)
            log_with_fields(logger, 'INFO', 'Matching finished', match_statistics(batch))
        return library, batch

    def _resolve_playlist(self, name: str, dry_run: bool):
        try:
            existing = self.provider.find_playlist_by_name(name)
            if existing is not None:
                logger.info(f"Found existing playlist: {name}")
                return existing, True, self.provider.get_playlist_entries(existing.id)
            if dry_run:
                logger.info(f"DRY-RUN: Would create playlist: {name}")
                return None, False, []
            logger.info(f"Creating new playlist: {name}")
            return self.provider.create_playlist(name), False, []
        except AuthExpired:
            raise
        except Exception as e:
            raise PlaylistStoreUnavailable(f"Failed to resolve playlist '{name}': {e}") from e

    def reconcile(self,
                  songs: Union[str, Sequence[str]],
                  playlist_name: str,
                  policy: UpdatePolicy = UpdatePolicy.APPEND,
                  dry_run: bool = False,
                  library_ids: Optional[Sequence[str]] = None) -> ReconcileResult:
        """Bring the named playlist in line with the requested songs.

        Args:
            songs: Newline-delimited request text, or already-parsed requests
            playlist_name: Destination playlist name (exact match)
            policy: Append or reset, applied when the playlist already exists
            dry_run: Compute everything but perform no mutation
            library_ids: Explicit collections to match against instead of core ones

        Returns:
            ReconcileResult; "no match" conditions are statuses, not exceptions
        """
        start_time = time.time()
        policy = UpdatePolicy(policy)
        requests = parse_song_requests(songs) if isinstance(songs, str) else list(songs)

        failed_sources: List[str] = []
        library, batch = self.match(requests, library_ids, failed_sources)
        result = ReconcileResult(
            status=ReconcileStatus.NO_CANDIDATES,
            playlist_name=playlist_name,
            matched=batch.matched,
            unmatched=batch.unmatched,
            dry_run=dry_run,
            library_size=len(library),
            failed_sources=failed_sources,
        )

        if not library:
            return self._finish(result, start_time)
        if not batch.matched:
            result.status = ReconcileStatus.NO_MATCHES
            return self._finish(result, start_time)

        playlist, is_update, current = self._resolve_playlist(playlist_name, dry_run)
        result.playlist = playlist
        result.is_update = is_update

        playlist_id = playlist.id if playlist else None
        with CorrelationContext(playlist_id=playlist_id, stage='diff'):
            plan = compute_diff(current, batch.matched_uris, policy if is_update else UpdatePolicy.APPEND)
            result.plan = plan
            logger.info(f"Plan for '{playlist_name}': add={len(plan.to_add)} remove={len(plan.to_remove)} "
                        f"skipped={plan.skipped_count} reorder={plan.needs_reorder}")

        if not is_update:
            result.status = ReconcileStatus.CREATED
        elif policy is UpdatePolicy.RESET:
            result.status = ReconcileStatus.RESET
        else:
            result.status = ReconcileStatus.UPDATED

        if dry_run:
            logger.info(f"DRY-RUN: Would add {len(plan.to_add)} and remove {len(plan.to_remove)} item(s)")
            return self._finish(result, start_time)

        with CorrelationContext(playlist_id=playlist_id, stage='apply'):
            result.applied = self.executor.apply(playlist_id, plan)
            if result.applied.failed:
                logger.warning(f"{result.applied.failed} item(s) could not be applied to '{playlist_name}'")

        return self._finish(result, start_time)

    @staticmethod
    def _finish(result: ReconcileResult, start_time: float) -> ReconcileResult:
        result.duration_ms = int((time.time() - start_time) * 1000)
        logger.info(result.message)
        return result
