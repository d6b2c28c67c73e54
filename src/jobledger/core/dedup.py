from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from jobledger.config import Settings, get_settings
from jobledger.core.hashing import jaccard, same_field, tokenize
from jobledger.core.runtime import get_group_cache
from jobledger.db.base import as_utc
from jobledger.db.models import JobRecord
from jobledger.db.repositories import Repository
from jobledger.errors import NotFoundError, ValidationError
from jobledger.types import DeduplicationResult, DuplicateGroup, DuplicateMatch

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class JobSnapshot:
    uuid: str
    company: str | None
    role: str | None
    content_hash: str
    tokens: frozenset[str]
    reference_time: datetime | None

    @classmethod
    def from_record(cls, record: JobRecord) -> JobSnapshot:
        return cls(
            uuid=record.uuid,
            company=record.company,
            role=record.role,
            content_hash=record.content_hash,
            tokens=tokenize(record.text),
            reference_time=as_utc(record.reference_time),
        )

    def sort_key(self) -> tuple[bool, datetime | None, str]:
        # Records without timestamps sort after every dated record.
        return (self.reference_time is None, self.reference_time, self.uuid)


class DuplicateGroupCache:
    """Holds the groups of the most recent scans until they are merged."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._groups: dict[str, DuplicateGroup] = {}

    def replace(self, groups: Iterable[DuplicateGroup]) -> None:
        with self._lock:
            self._groups = {group.id: group for group in groups}

    def get(self, group_id: str) -> DuplicateGroup | None:
        with self._lock:
            return self._groups.get(group_id)

    def discard(self, group_id: str) -> None:
        with self._lock:
            self._groups.pop(group_id, None)

    def all(self) -> list[DuplicateGroup]:
        with self._lock:
            return list(self._groups.values())


class _DisjointSet:
    def __init__(self, items: Iterable[str]):
        self.parent = {item: item for item in items}

    def find(self, item: str) -> str:
        root = item
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[item] != root:
            self.parent[item], item = root, self.parent[item]
        return root

    def union(self, left: str, right: str) -> None:
        left_root, right_root = self.find(left), self.find(right)
        if left_root != right_root:
            # Smallest uuid becomes the root so component iteration is stable.
            if right_root < left_root:
                left_root, right_root = right_root, left_root
            self.parent[right_root] = left_root


def build_groups(
    snapshots: Iterable[JobSnapshot],
    scores: dict[tuple[str, str], float],
    threshold: float,
) -> list[DuplicateGroup]:
    """Union every pair at or above ``threshold`` into connected components."""
    by_uuid = {snapshot.uuid: snapshot for snapshot in snapshots}
    components = _DisjointSet(by_uuid)
    edges = {pair: score for pair, score in scores.items() if score >= threshold}
    for left, right in edges:
        components.union(left, right)

    members: dict[str, list[str]] = {}
    for uuid in by_uuid:
        members.setdefault(components.find(uuid), []).append(uuid)

    groups: list[DuplicateGroup] = []
    for uuids in members.values():
        if len(uuids) < 2:
            continue
        primary = min((by_uuid[uuid] for uuid in uuids), key=JobSnapshot.sort_key)
        component = set(uuids)

        # Highest edge score touching each member; both ends of an edge share a component.
        best: dict[str, float] = {}
        for (left, right), score in edges.items():
            if left in component:
                best[left] = max(best.get(left, 0.0), score)
                best[right] = max(best.get(right, 0.0), score)

        matches = [
            DuplicateMatch(uuid=uuid, similarity_score=round(best[uuid], 6))
            for uuid in uuids
            if uuid != primary.uuid
        ]
        matches.sort(key=lambda match: (-match.similarity_score, match.uuid))
        groups.append(
            DuplicateGroup(
                primary_uuid=primary.uuid,
                members=matches,
                max_similarity=round(max(best[uuid] for uuid in uuids), 6),
            )
        )

    groups.sort(key=lambda group: (-group.max_similarity, group.primary_uuid))
    return groups


class DuplicateDetector:
    def __init__(
        self,
        session: Session,
        *,
        settings: Settings | None = None,
        cache: DuplicateGroupCache | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.cache = cache or get_group_cache()
        self.repo = Repository(session, settings=self.settings)

    def score_pair(self, left: JobSnapshot, right: JobSnapshot) -> float:
        fields = self.settings.comparison_field_set
        if "text" in fields and left.content_hash == right.content_hash:
            return 1.0

        score = 0.0
        if "text" in fields:
            score += self.settings.dedup_token_weight * jaccard(left.tokens, right.tokens)
        if "company" in fields and same_field(left.company, right.company):
            score += self.settings.dedup_company_bonus
        if "role" in fields and same_field(left.role, right.role):
            score += self.settings.dedup_role_bonus
        return min(score, 1.0)

    def snapshot(self, candidates: Iterable[str] | None = None) -> list[JobSnapshot]:
        statement = select(JobRecord).where(JobRecord.archived.is_(False))
        if candidates is not None:
            statement = statement.where(JobRecord.uuid.in_(list(candidates)))
        records = self.session.scalars(statement.order_by(JobRecord.uuid)).all()
        return [JobSnapshot.from_record(record) for record in records]

    def scan(
        self,
        candidates: Iterable[str] | None = None,
        threshold: float | None = None,
    ) -> DeduplicationResult:
        """Group near-duplicate records.

        The result reflects the records as read at the start of the scan, not a
        live view. Archived records never take part.
        """
        threshold = self.settings.similarity_threshold if threshold is None else threshold
        if threshold < 0 or threshold > 1:
            raise ValidationError("threshold must be between 0 and 1")

        snapshots = self.snapshot(candidates)
        scores: dict[tuple[str, str], float] = {}
        for left, right in itertools.combinations(snapshots, 2):
            scores[(left.uuid, right.uuid)] = self.score_pair(left, right)

        groups = build_groups(snapshots, scores, threshold)
        self.cache.replace(groups)
        logger.info(
            "Duplicate scan over %s records found %s groups (threshold=%s)",
            len(snapshots),
            len(groups),
            threshold,
        )
        return DeduplicationResult(
            duplicate_groups=groups,
            total_duplicates_found=sum(len(group.members) for group in groups),
            threshold_used=threshold,
        )

    def get_group(self, group_id: str) -> DuplicateGroup:
        group = self.cache.get(group_id)
        if group is None:
            raise NotFoundError(f"duplicate group {group_id} not found; run a new scan")
        return group

    def merge(
        self,
        group_id: str,
        surviving_uuid: str,
        *,
        note: str = "",
        discard: bool = False,
    ) -> JobRecord:
        group = self.get_group(group_id)
        if surviving_uuid not in group.uuids:
            raise ValidationError(f"job {surviving_uuid} is not part of group {group_id}")

        sources = [uuid for uuid in group.uuids if uuid != surviving_uuid]
        survivor = self.repo.merge_jobs(surviving_uuid, sources, note=note, discard=discard)
        self.cache.discard(group_id)
        return survivor

    def auto_merge(self, threshold: float | None = None) -> list[JobRecord]:
        """Merge every group whose members all clear ``auto_merge_threshold``."""
        threshold = self.settings.auto_merge_threshold if threshold is None else threshold
        result = self.scan(threshold=threshold)
        return [
            self.merge(group.id, group.primary_uuid, note="auto-merge")
            for group in result.duplicate_groups
        ]
