from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


@dataclass(frozen=True)
class Candidate:
    """A track, video or card that can satisfy a song request."""

    name: str = ""
    artists: List[str] = None
    uri: str = ""
    id: Optional[str] = None
    album: Optional[str] = None
    source: Optional[str] = None

    def __post_init__(self):
        if self.artists is None:
            object.__setattr__(self, 'artists', [])


@dataclass(frozen=True)
class Playlist:
    """Domain entity representing a playlist (or a board acting as one)."""

    id: str
    name: str
    owner_id: str = ""
    is_owned: bool = False
    track_count: int = 0
    url: Optional[str] = None

    @property
    def is_core(self) -> bool:
        return "core" in (self.name or "").lower()


@dataclass(frozen=True)
class MatchResult:
    """Outcome of resolving one song request against the library."""

    input: str
    matched: Optional[Candidate] = None
    score: Optional[float] = None

    @property
    def is_matched(self) -> bool:
        return self.matched is not None


class UpdatePolicy(str, Enum):
    """How an existing destination playlist is brought up to date."""

    APPEND = "append"
    RESET = "reset"


@dataclass(frozen=True)
class DiffPlan:
    """Transformation from the current playlist state to the target state."""

    policy: UpdatePolicy
    to_add: List[str] = field(default_factory=list)
    to_remove: List[str] = field(default_factory=list)
    final_order: List[str] = field(default_factory=list)
    needs_reorder: bool = False
    added_count: int = 0
    skipped_count: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.to_add and not self.to_remove


@dataclass(frozen=True)
class ItemOutcome:
    """Result of one mutation call (a chunk of URIs) against a playlist."""

    action: str
    uris: List[str]
    ok: bool = True
    reason: Optional[str] = None


@dataclass
class ApplyResult:
    """Aggregated outcome of realizing a DiffPlan on a platform."""

    outcomes: List[ItemOutcome] = field(default_factory=list)

    @property
    def added(self) -> int:
        return sum(len(o.uris) for o in self.outcomes if o.ok and o.action in ("add", "replace"))

    @property
    def removed(self) -> int:
        return sum(len(o.uris) for o in self.outcomes if o.ok and o.action == "remove")

    @property
    def failed(self) -> int:
        return sum(len(o.uris) for o in self.outcomes if not o.ok)

    @property
    def errors(self) -> List[str]:
        return [o.reason for o in self.outcomes if not o.ok and o.reason]
