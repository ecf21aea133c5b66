from __future__ import annotations

import logging
import unicodedata
from dataclasses import dataclass, field
from functools import cmp_to_key
from typing import List, Optional, Sequence, Tuple

from corelist.application.scoring import MatcherConfig, SimilarityScorer
from corelist.domain.entities import Candidate, MatchResult
from corelist.domain.normalization import fallback_prefix, normalize


logger = logging.getLogger(__name__)

# Raw distances closer than this are treated as a tie and broken by title length
TIE_EPSILON = 0.01


def _title_length(candidate: Candidate) -> int:
    # Composed form so that combining sequences count as one character
    return len(unicodedata.normalize("NFC", normalize(candidate.name)))


def _compare_results(a: Tuple[Candidate, float], b: Tuple[Candidate, float]) -> int:
    if abs(a[1] - b[1]) < TIE_EPSILON:
        return _title_length(a[0]) - _title_length(b[0])
    return -1 if a[1] < b[1] else 1


def select_best(query: str, results: Sequence[Tuple[Candidate, float]]) -> Optional[Tuple[Candidate, float]]:
    """Pick the single best ``(candidate, raw distance)`` pair for a normalized query.

    ``results`` must already be restricted to pairs within the threshold.

    1. The first candidate whose normalized title equals the query (ignoring case) wins.
    2. Otherwise the lowest distance wins; near-equal distances prefer the shorter title.
    """
    if not results:
        return None

    wanted = query.lower()
    for candidate, raw in results:
        if normalize(candidate.name).lower() == wanted:
            return candidate, raw

    # list.sort is stable, so equal-length ties keep result order
    ranked = sorted(results, key=cmp_to_key(_compare_results))
    return ranked[0]


@dataclass
class BatchMatchResult:
    """Requests partitioned into matched results and unmatched request texts."""

    matched: List[MatchResult] = field(default_factory=list)
    unmatched: List[str] = field(default_factory=list)

    @property
    def matched_uris(self) -> List[str]:
        return [r.matched.uri for r in self.matched]

    @property
    def total(self) -> int:
        return len(self.matched) + len(self.unmatched)


class SongMatcher:
    """Resolves free-text song requests against a candidate library.

    Each lookup normalizes the request, scores it against the whole library, and picks a
    single best candidate. When a ``"<prefix> - <suffix>"`` request finds nothing, the
    prefix alone is tried once.
    """

    def __init__(self, config: Optional[MatcherConfig] = None, scorer: Optional[SimilarityScorer] = None):
        """Initialize the matcher.

        Args:
            config: Matching configuration; a default one is created when omitted
            scorer: Scorer to use; built around ``config`` when omitted
        """
        if scorer is not None and config is not None and scorer.config is not config:
            raise ValueError("scorer must share the matcher configuration")
        self.scorer = scorer or SimilarityScorer(config or MatcherConfig())
        self.config = self.scorer.config

    def set_threshold(self, threshold: float) -> None:
        self.config.set_threshold(threshold)

    def set_song_weight(self, weight: float) -> None:
        self.config.set_song_weight(weight)

    def _resolve(self, query: str, library: Sequence[Candidate]) -> Optional[Tuple[Candidate, float]]:
        if not query:
            return None
        return select_best(query, self.scorer.search(query, library))

    def find_best_match(self, song: str, library: Sequence[Candidate]) -> Optional[MatchResult]:
        """Find the best library entry for one request.

        Args:
            song: Raw request text
            library: Candidates to match against

        Returns:
            MatchResult with a score in (0, 1], or None when nothing is close enough
        """
        if not library:
            return None

        query = normalize(song)
        best = self._resolve(query, library)

        if best is None:
            prefix = fallback_prefix(query)
            if prefix:
                logger.debug(f"No match for '{query}', retrying with '{prefix}'")
                best = self._resolve(prefix, library)

        if best is None:
            return None

        candidate, raw = best
        return MatchResult(input=song, matched=candidate, score=1.0 - raw)

    def find_all_matches(self, song: str, library: Sequence[Candidate], max_results: int = 5) -> List[MatchResult]:
        """Return up to ``max_results`` eligible matches, closest first."""
        if not library:
            return []
        query = normalize(song)
        if not query:
            return []
        return [
            MatchResult(input=song, matched=candidate, score=1.0 - raw)
            for candidate, raw in self.scorer.search(query, library)[:max_results]
        ]

    def match_all(self, requests: Sequence[str], library: Sequence[Candidate]) -> BatchMatchResult:
        """Resolve every request independently, preserving input order.

        Candidates are never consumed, so one candidate may satisfy several requests.
        """
        result = BatchMatchResult()
        if not library:
            result.unmatched.extend(requests)
            return result

        for song in requests:
            match = self.find_best_match(song, library)
            if match is not None:
                result.matched.append(match)
            else:
                result.unmatched.append(song)

        logger.debug(f"Matched {len(result.matched)}/{result.total} requests")
        return result


def match_statistics(result: BatchMatchResult) -> dict:
    """Summary counts for a batch of match results."""
    total = result.total
    matched = len(result.matched)
    return {
        "total": total,
        "matched": matched,
        "unmatched": len(result.unmatched),
        "match_rate": matched / total if total else 0.0,
    }
