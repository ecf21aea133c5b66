from unittest.mock import Mock

import pytest

from corelist.application.pipeline import (
    PlanExecutor,
    ReconcilePipeline,
    ReconcileStatus,
    collect_core_library,
)
from corelist.domain.entities import Candidate, DiffPlan, UpdatePolicy
from corelist.domain.errors import (
    AuthExpired, LibraryUnavailable, PlaylistStoreUnavailable, TemporaryFailure,
)
from corelist.tests.fakes import InMemoryProvider


SONGS = ["Perfect", "Shape of You", "Bad Habits", "Shivers", "Photograph"]


def _track(name):
    return Candidate(name=name, artists=["Ed Sheeran"], uri=f"uri:{name}", id=name)


class TestCollectCoreLibrary:
    """Tests for aggregating core collections into one library."""

    def setup_method(self):
        self.provider = InMemoryProvider()

    def test_only_owned_core_collections_are_used(self):
        self.provider.add_collection("My CORE favourites", [_track("Perfect")])
        self.provider.add_collection("Workout", [_track("Shivers")])
        self.provider.add_collection("core of someone else", [_track("Bad Habits")], is_owned=False)

        library = collect_core_library(self.provider)

        assert [c.name for c in library] == ["Perfect"]

    def test_duplicates_across_collections_are_kept(self):
        self.provider.add_collection("core 1", [_track("Perfect")])
        self.provider.add_collection("core 2", [_track("Perfect")])

        assert len(collect_core_library(self.provider)) == 2

    def test_explicit_ids_replace_core_selection(self):
        self.provider.add_collection("core", [_track("Perfect")])
        other = self.provider.add_collection("Workout", [_track("Shivers")])

        library = collect_core_library(self.provider, playlist_ids=[other.id])

        assert [c.name for c in library] == ["Shivers"]

    def test_partial_failure_is_skipped(self):
        broken = self.provider.add_collection("core broken", [_track("Perfect")])
        self.provider.add_collection("core ok", [_track("Shivers")])
        self.provider.failing_collections.add(broken.id)
        failed = []

        library = collect_core_library(self.provider, failed_sources=failed)

        assert [c.name for c in library] == ["Shivers"]
        assert failed == ["core broken"]

    def test_all_collections_failing_is_fatal(self):
        broken = self.provider.add_collection("core broken", [_track("Perfect")])
        self.provider.failing_collections.add(broken.id)

        with pytest.raises(LibraryUnavailable):
            collect_core_library(self.provider)

    def test_listing_failure_is_fatal(self):
        source = Mock()
        source.name = "mock"
        source.list_owned_playlists.side_effect = TemporaryFailure("down")

        with pytest.raises(LibraryUnavailable):
            collect_core_library(source)

    def test_auth_expired_propagates(self):
        source = Mock()
        source.name = "mock"
        source.list_owned_playlists.return_value = [
            self.provider.add_collection("core", [_track("Perfect")])
        ]
        source.list_candidates.side_effect = AuthExpired("expired")

        with pytest.raises(AuthExpired):
            collect_core_library(source)

    def test_no_core_collections_gives_empty_library(self):
        self.provider.add_collection("Workout", [_track("Shivers")])

        assert collect_core_library(self.provider) == []


class TestPlanExecutor:
    """Tests for chunked plan execution."""

    def test_append_is_chunked_to_batch_size(self):
        provider = InMemoryProvider(max_batch_size=2)
        playlist = provider.add_playlist("Party", [])
        plan = DiffPlan(policy=UpdatePolicy.APPEND, to_add=["a", "b", "c", "d", "e"])

        result = PlanExecutor(provider).apply(playlist.id, plan)

        assert [len(uris) for action, uris in provider.calls] == [2, 2, 1]
        assert provider.entries[playlist.id] == ["a", "b", "c", "d", "e"]
        assert result.added == 5

    def test_failed_chunk_is_recorded_and_others_continue(self):
        provider = InMemoryProvider(max_batch_size=1)
        playlist = provider.add_playlist("Party", [])
        provider.failing_uris.add("b")
        plan = DiffPlan(policy=UpdatePolicy.APPEND, to_add=["a", "b", "c"])

        result = PlanExecutor(provider).apply(playlist.id, plan)

        assert provider.entries[playlist.id] == ["a", "c"]
        assert result.added == 2
        assert result.failed == 1
        assert len(result.errors) == 1

    def test_reset_with_replace(self):
        provider = InMemoryProvider(max_batch_size=2, supports_replace=True)
        playlist = provider.add_playlist("Party", ["x", "y", "z"])
        plan = DiffPlan(policy=UpdatePolicy.RESET, to_add=["a", "b", "a"], to_remove=["x", "y", "z"])

        PlanExecutor(provider).apply(playlist.id, plan)

        assert [action for action, _ in provider.calls] == ["replace", "add"]
        assert provider.entries[playlist.id] == ["a", "b", "a"]

    def test_reset_without_replace_removes_then_adds(self):
        provider = InMemoryProvider(max_batch_size=2)
        playlist = provider.add_playlist("Party", ["x", "y", "x"])
        plan = DiffPlan(policy=UpdatePolicy.RESET, to_add=["a"], to_remove=["x", "y", "x"])

        result = PlanExecutor(provider).apply(playlist.id, plan)

        assert provider.calls == [("remove", ["x", "y"]), ("add", ["a"])]
        assert provider.entries[playlist.id] == ["a"]
        assert result.removed == 2

    def test_auth_expired_is_not_swallowed(self):
        provider = Mock()
        provider.max_batch_size = 100
        provider.add_items.side_effect = AuthExpired("expired")

        with pytest.raises(AuthExpired):
            PlanExecutor(provider).apply("pl", DiffPlan(policy=UpdatePolicy.APPEND, to_add=["a"]))

    def test_empty_plan_makes_no_calls(self):
        provider = InMemoryProvider()
        PlanExecutor(provider).apply("pl", DiffPlan(policy=UpdatePolicy.RESET))
        assert provider.calls == []


class TestReconcilePipeline:
    """Tests for the full reconcile flow against an in-memory provider."""

    def setup_method(self):
        self.provider = InMemoryProvider()
        self.provider.add_collection("Core Ed", [_track(name) for name in SONGS])
        self.pipeline = ReconcilePipeline(self.provider)

    def _entries(self, name):
        return self.provider.get_playlist_entries(self.provider.find_playlist_by_name(name).id)

    def test_creates_new_playlist_with_all_matches(self):
        result = self.pipeline.reconcile("Perfect\n  - Shape of You\nZzz Qqq", "Party")

        assert result.status is ReconcileStatus.CREATED
        assert not result.is_update
        assert result.unmatched == ["Zzz Qqq"]
        assert self._entries("Party") == ["uri:Perfect", "uri:Shape of You"]
        assert result.added_count == 2
        assert result.skipped_count == 0
        assert result.playlist.url == f"memory://{result.playlist.id}"
        assert result.message == "Playlist created successfully!"

    def test_append_to_existing_playlist(self):
        self.provider.add_playlist("Party", ["uri:Perfect"])

        result = self.pipeline.reconcile(["Perfect", "Shivers"], "Party")

        assert result.status is ReconcileStatus.UPDATED
        assert result.is_update
        assert self._entries("Party") == ["uri:Perfect", "uri:Shivers"]
        assert result.added_count == 1
        assert result.skipped_count == 1
        assert result.message == "Playlist updated! Added 1 new song(s)."

    def test_reset_existing_playlist(self):
        self.provider.add_playlist("Party", ["uri:Perfect", "uri:Other"])

        result = self.pipeline.reconcile(["Shivers", "Perfect", "Shivers"], "Party", policy=UpdatePolicy.RESET)

        assert result.status is ReconcileStatus.RESET
        assert self._entries("Party") == ["uri:Shivers", "uri:Perfect", "uri:Shivers"]
        assert result.added_count == 3
        assert result.skipped_count == 0

    def test_second_run_is_a_no_op(self):
        self.pipeline.reconcile(["Perfect", "Shivers"], "Party")
        self.provider.calls.clear()

        result = self.pipeline.reconcile(["Perfect", "Shivers"], "Party")

        assert result.plan.is_empty
        assert self.provider.calls == []

    def test_dry_run_does_not_mutate(self):
        result = self.pipeline.reconcile(["Perfect"], "Party", dry_run=True)

        assert result.status is ReconcileStatus.CREATED
        assert result.dry_run
        assert result.plan.to_add == ["uri:Perfect"]
        assert result.applied is None
        assert self.provider.calls == []
        assert self.provider.find_playlist_by_name("Party") is None
        assert result.message.startswith("DRY-RUN: ")

    def test_no_core_playlists(self):
        pipeline = ReconcilePipeline(InMemoryProvider())

        result = pipeline.reconcile(["Perfect"], "Party")

        assert result.status is ReconcileStatus.NO_CANDIDATES
        assert result.unmatched == ["Perfect"]
        assert result.plan is None

    def test_no_matches(self):
        result = self.pipeline.reconcile(["Zzz Qqq"], "Party")

        assert result.status is ReconcileStatus.NO_MATCHES
        assert self.provider.find_playlist_by_name("Party") is None

    def test_unreachable_playlist_store_is_fatal(self):
        self.provider.find_playlist_by_name = Mock(side_effect=TemporaryFailure("down"))

        with pytest.raises(PlaylistStoreUnavailable):
            self.pipeline.reconcile(["Perfect"], "Party")

    def test_library_can_come_from_another_source(self):
        source = InMemoryProvider()
        source.add_collection("core elsewhere", [_track("Photograph")])
        pipeline = ReconcilePipeline(self.provider, library_source=source)

        result = pipeline.reconcile(["Photograph", "Perfect"], "Party")

        assert result.unmatched == ["Perfect"]
        assert self._entries("Party") == ["uri:Photograph"]

    def test_partial_write_failure_is_reported(self):
        self.provider.max_batch_size = 1
        self.provider.failing_uris.add("uri:Shivers")
        pipeline = ReconcilePipeline(self.provider)

        result = pipeline.reconcile(["Perfect", "Shivers", "Photograph"], "Party")

        assert self._entries("Party") == ["uri:Perfect", "uri:Photograph"]
        assert result.failed_count == 1

    def test_matcher_settings_are_live(self):
        self.pipeline.matcher.set_threshold(0.1)

        result = self.pipeline.reconcile(["Shape - Remix Version"], "Party")

        assert [m.matched.name for m in result.matched] == ["Shape of You"]
