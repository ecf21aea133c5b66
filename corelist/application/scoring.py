from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from rapidfuzz import fuzz, utils
from rapidfuzz.distance import Levenshtein

from corelist.domain.entities import Candidate
from corelist.domain.normalization import normalize, normalize_artists


DEFAULT_THRESHOLD = 0.6
DEFAULT_SONG_WEIGHT = 0.7
# Fields whose distance is exactly zero still need a positive base for the weighted product
_EPSILON = sys.float_info.epsilon
_WEIGHT_TOLERANCE = 1e-9


@dataclass(frozen=True)
class FieldKey:
    """One searchable candidate field and its share of the combined score."""

    name: str
    getter: Callable[[Candidate], str]
    weight: float


def _name_field(candidate: Candidate) -> str:
    return normalize(candidate.name)


def _artists_field(candidate: Candidate) -> str:
    return normalize_artists(candidate.artists)


def _check_unit_interval(label: str, value: float) -> float:
    value = float(value)
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{label} must be between 0 and 1, got {value}")
    return value


class MatcherConfig:
    """Runtime-mutable matching configuration.

    Owned by a single matcher; every scoring call reads the current values, so
    ``set_threshold`` and ``set_song_weight`` take effect on the next lookup.
    """

    def __init__(self, threshold: float = DEFAULT_THRESHOLD, song_weight: float = DEFAULT_SONG_WEIGHT):
        self._threshold = _check_unit_interval("threshold", threshold)
        self._song_weight = _check_unit_interval("song weight", song_weight)

    @property
    def threshold(self) -> float:
        return self._threshold

    @property
    def song_weight(self) -> float:
        return self._song_weight

    @property
    def artist_weight(self) -> float:
        return 1.0 - self._song_weight

    def set_threshold(self, value: float) -> None:
        self._threshold = _check_unit_interval("threshold", value)

    def set_song_weight(self, value: float) -> None:
        """Set the title weight; the artist weight becomes its complement."""
        self._song_weight = _check_unit_interval("song weight", value)

    def keys(self) -> Tuple[FieldKey, FieldKey]:
        return (
            FieldKey(name="name", getter=_name_field, weight=self._song_weight),
            FieldKey(name="artists", getter=_artists_field, weight=self.artist_weight),
        )

    def to_json(self) -> dict:
        return {
            "threshold": self._threshold,
            "songWeight": self._song_weight,
            "artistWeight": self.artist_weight,
        }


class SimilarityScorer:
    """Weighted approximate-match scorer over a candidate's title and artists.

    The query is the pattern searched for in each field, so a query found at the end
    of a long title scores the same as one found at its start, while a query longer
    than the field pays for every character the field lacks. Raw distances are in
    [0, 1] with 0 meaning identical.

    Only fields whose own distance is within the threshold and below 1.0 contribute;
    their distances are combined as a product weighted by each field's share. A
    candidate with no contributing field has distance 1.0 and is never eligible, one
    whose contributing fields all match perfectly has distance 0.0.
    """

    def __init__(self, config: Optional[MatcherConfig] = None, keys: Optional[Sequence[FieldKey]] = None):
        self.config = config or MatcherConfig()
        if keys is not None:
            total = sum(k.weight for k in keys)
            if abs(total - 1.0) > _WEIGHT_TOLERANCE:
                raise ValueError(f"Field weights must sum to 1.0, got {total}")
        self._keys = tuple(keys) if keys is not None else None
        self.calls = 0

    @property
    def keys(self) -> Tuple[FieldKey, ...]:
        return self._keys if self._keys is not None else self.config.keys()

    @staticmethod
    def field_distance(query: str, value: str) -> float:
        """Normalized edit distance of ``query`` against its best-aligned part of ``value``.

        A query no longer than the value is compared with the window of the value it
        lines up with best. A longer query is compared with the whole value.
        """
        query, value = utils.default_process(query), utils.default_process(value)
        if not query or not value:
            return 1.0
        if len(query) <= len(value):
            alignment = fuzz.partial_ratio_alignment(query, value)
            value = value[alignment.dest_start:alignment.dest_end]
        return Levenshtein.normalized_distance(query, value)

    def distance(self, query: str, candidate: Candidate) -> float:
        """Raw combined distance between a normalized query and a candidate."""
        self.calls += 1
        threshold = self.config.threshold
        combined = 1.0
        contributed = False
        exact = True
        for key in self.keys:
            field_distance = self.field_distance(query, key.getter(candidate))
            if field_distance > threshold or field_distance >= 1.0:
                continue
            contributed = True
            exact = exact and field_distance == 0.0
            combined *= max(field_distance, _EPSILON) ** key.weight
        if not contributed:
            return 1.0
        return 0.0 if exact else combined

    def score(self, query: str, candidate: Candidate) -> float:
        """Similarity in [0, 1] where 1.0 is a perfect match."""
        return 1.0 - self.distance(query, candidate)

    def search(self, query: str, library: Sequence[Candidate]) -> List[Tuple[Candidate, float]]:
        """Return ``(candidate, raw distance)`` pairs within the threshold, closest first.

        Equal distances keep library order. A distance of 1.0 is never within the
        threshold, so every returned pair scores above zero.
        """
        threshold = self.config.threshold
        results = []
        for candidate in library:
            raw = self.distance(query, candidate)
            if raw < 1.0 and raw <= threshold:
                results.append((candidate, raw))
        results.sort(key=lambda pair: pair[1])
        return results
