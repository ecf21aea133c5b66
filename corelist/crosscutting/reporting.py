import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, List, Any, Optional, Union

from corelist.application.pipeline import ReconcileResult


class RequestStatus(str, Enum):
    """Status of one song request after a reconciliation run."""

    ADDED = "added"
    ALREADY_PRESENT = "already_present"
    NOT_FOUND = "not_found"
    ERROR = "error"
    SKIPPED_DRY_RUN = "skipped_dry_run"


@dataclass
class ReportHeader:
    """Header information for a reconcile report."""

    job_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    platform: str = ""
    playlist_name: str = ""
    policy: str = "append"
    status: str = ""
    dry_run: bool = False

    def to_json(self) -> Dict[str, Any]:
        return {
            "jobId": self.job_id,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "platform": self.platform,
            "playlistName": self.playlist_name,
            "policy": self.policy,
            "status": self.status,
            "dryRun": self.dry_run,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "ReportHeader":
        return cls(
            job_id=data["jobId"],
            started_at=datetime.fromisoformat(data["startedAt"]),
            finished_at=datetime.fromisoformat(data["finishedAt"]) if data.get("finishedAt") else None,
            platform=data.get("platform", ""),
            playlist_name=data.get("playlistName", ""),
            policy=data.get("policy", "append"),
            status=data.get("status", ""),
            dry_run=data.get("dryRun", False),
        )


@dataclass
class PlaylistSummary:
    """Destination playlist and the counts of what happened to it."""

    playlist_id: Optional[str]
    name: str
    url: Optional[str] = None
    is_update: bool = False
    totals: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> Dict[str, Any]:
        return {
            "playlistId": self.playlist_id,
            "name": self.name,
            "url": self.url,
            "isUpdate": self.is_update,
            "totals": self.totals,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "PlaylistSummary":
        return cls(
            playlist_id=data.get("playlistId"),
            name=data["name"],
            url=data.get("url"),
            is_update=data.get("isUpdate", False),
            totals=data.get("totals", {}),
        )


@dataclass
class RequestResult:
    """Outcome of one song request."""

    input: str
    status: RequestStatus
    score: Optional[float] = None
    uri: Optional[str] = None
    title: Optional[str] = None
    artists: List[str] = field(default_factory=list)
    reason: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        return {
            "input": self.input,
            "status": self.status.value,
            "score": self.score,
            "uri": self.uri,
            "title": self.title,
            "artists": self.artists,
            "reason": self.reason,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "RequestResult":
        return cls(
            input=data["input"],
            status=RequestStatus(data["status"]),
            score=data.get("score"),
            uri=data.get("uri"),
            title=data.get("title"),
            artists=data.get("artists") or [],
            reason=data.get("reason"),
        )


@dataclass
class Report:
    """Complete reconcile report."""

    header: ReportHeader
    playlist: PlaylistSummary
    requests: List[RequestResult]
    errors: List[str] = field(default_factory=list)

    def to_json(self) -> Dict[str, Any]:
        return {
            "header": self.header.to_json(),
            "playlist": self.playlist.to_json(),
            "requests": [r.to_json() for r in self.requests],
            "errors": list(self.errors),
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Report":
        return cls(
            header=ReportHeader.from_json(data["header"]),
            playlist=PlaylistSummary.from_json(data["playlist"]),
            requests=[RequestResult.from_json(r) for r in data.get("requests", [])],
            errors=data.get("errors", []),
        )


def _request_results(result: ReconcileResult) -> List[RequestResult]:
    to_add = set(result.plan.to_add) if result.plan else set()
    failed: Dict[str, str] = {}
    if result.applied:
        for outcome in result.applied.outcomes:
            if not outcome.ok and outcome.action in ("add", "replace"):
                for uri in outcome.uris:
                    failed[uri] = outcome.reason or "failed"

    requests: List[RequestResult] = []
    for match in result.matched:
        uri = match.matched.uri
        if uri in failed:
            status, reason = RequestStatus.ERROR, failed[uri]
        elif uri not in to_add:
            status, reason = RequestStatus.ALREADY_PRESENT, None
        elif result.dry_run:
            status, reason = RequestStatus.SKIPPED_DRY_RUN, None
        else:
            status, reason = RequestStatus.ADDED, None
        requests.append(RequestResult(
            input=match.input,
            status=status,
            score=round(match.score, 4) if match.score is not None else None,
            uri=uri,
            title=match.matched.name,
            artists=list(match.matched.artists),
            reason=reason,
        ))

    for song in result.unmatched:
        requests.append(RequestResult(input=song, status=RequestStatus.NOT_FOUND))
    return requests


def build_report(result: ReconcileResult,
                 job_id: str,
                 platform: str,
                 started_at: datetime,
                 policy: str = "append",
                 finished_at: Optional[datetime] = None) -> Report:
    """Create a report from a reconciliation result."""
    total = len(result.matched) + len(result.unmatched)
    header = ReportHeader(
        job_id=job_id,
        started_at=started_at,
        finished_at=finished_at or datetime.now(timezone.utc),
        platform=platform,
        playlist_name=result.playlist_name,
        policy=policy,
        status=result.status.value,
        dry_run=result.dry_run,
    )
    playlist = PlaylistSummary(
        playlist_id=result.playlist.id if result.playlist else None,
        name=result.playlist_name,
        url=result.playlist.url if result.playlist else None,
        is_update=result.is_update,
        totals={
            "requested": total,
            "matched": len(result.matched),
            "unmatched": len(result.unmatched),
            "added": result.added_count,
            "skipped": result.skipped_count,
            "removed": len(result.plan.to_remove) if result.plan else 0,
            "failed": result.failed_count,
            "matchRate": round(len(result.matched) / total, 4) if total else 0.0,
            "librarySize": result.library_size,
            "durationMs": result.duration_ms,
        },
    )
    errors = list(result.applied.errors) if result.applied else []
    errors.extend(f"Failed to load core collection: {name}" for name in result.failed_sources)
    return Report(header=header, playlist=playlist, requests=_request_results(result), errors=errors)


def write_report(report: Report, path: Union[str, Path]) -> Path:
    """Write the report as indented JSON, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(report.to_json(), f, indent=2, ensure_ascii=False)
    return path
