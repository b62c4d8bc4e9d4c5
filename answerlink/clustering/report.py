"""Audit artifacts emitted by every clustering run, dry or committed."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence

from answerlink.contracts import Cluster, ExclusionEntry, Locale, OrphanRecord, OverlapRecord
from answerlink.guards import GuardDecision

from .adjudication import Verdict, VerdictOutcome
from .audit import LoopDecision, pair_request_id
from .candidates import CandidateBatch, CandidatePair
from .questions import GroupingResult

LOGGER = logging.getLogger(__name__)


def _pair_entry(pair: CandidatePair, **extra: Any) -> Dict[str, Any]:
    entry = pair.to_dict()
    entry.update(extra)
    return entry


@dataclass(slots=True)
class ClusteringReport:
    """Human-reviewable record of one clustering run for one locale."""

    locale: Locale
    mode: str
    dry_run: bool
    started_at: datetime
    candidates: List[Dict[str, Any]] = field(default_factory=list)
    accepted: List[Dict[str, Any]] = field(default_factory=list)
    rejected: List[Dict[str, Any]] = field(default_factory=list)
    unresolved: List[Dict[str, Any]] = field(default_factory=list)
    classification: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    groups: List[Dict[str, Any]] = field(default_factory=list)
    clusters: List[Dict[str, Any]] = field(default_factory=list)
    exclusions: List[Dict[str, Any]] = field(default_factory=list)
    orphans: List[Dict[str, Any]] = field(default_factory=list)
    overlaps: List[Dict[str, Any]] = field(default_factory=list)
    loops: List[Dict[str, Any]] = field(default_factory=list)
    adjudications_dispatched: int = 0

    def record_pass(
        self,
        grouping: GroupingResult,
        locations: Mapping[str, bool],
        categories: Mapping[str, str],
        batches: Sequence[CandidateBatch],
        verdicts: Mapping[str, Verdict],
    ) -> None:
        """Replace pass-level snapshots with the latest clustering pass."""

        self.classification = {
            question_id: {
                "location": bool(locations.get(question_id, False)),
                "category": categories.get(question_id),
                "state": state.value,
            }
            for question_id, state in sorted(grouping.states.items())
        }
        self.groups = [
            {
                "group_id": group.group_id,
                "audit_group_id": group.audit_group_id,
                "anchor_question_id": group.anchor_question_id,
                "flagship_question_id": group.flagship_question_id,
                "string_search": group.string_search,
                "question_ids": list(group.question_ids),
            }
            for group in grouping.groups
        ]
        self.candidates, self.accepted, self.rejected, self.unresolved = [], [], [], []
        for batch in batches:
            for pair, decision in batch.rejected:
                self.candidates.append(_pair_entry(pair, stage="guard"))
                self.rejected.append(_guard_entry(pair, decision))
            for pair in batch.pairs:
                self.candidates.append(_pair_entry(pair, stage="adjudication"))
                verdict = verdicts.get(pair_request_id(pair.left_answer_id, pair.right_answer_id))
                if verdict is None or verdict.outcome is VerdictOutcome.UNRESOLVED:
                    self.unresolved.append(_pair_entry(pair))
                elif verdict.accepted:
                    self.accepted.append(_pair_entry(pair, source=verdict.source))
                else:
                    self.rejected.append(
                        _pair_entry(
                            pair,
                            stage="adjudication",
                            category=verdict.category.value if verdict.category else None,
                            source=verdict.source,
                        )
                    )

    def record_outcome(
        self,
        clusters: Sequence[Cluster],
        exclusions: Sequence[ExclusionEntry],
        orphans: Sequence[OrphanRecord],
        overlaps: Sequence[OverlapRecord],
        loops: Sequence[LoopDecision],
    ) -> None:
        self.clusters = [cluster.model_dump(mode="json") for cluster in clusters]
        self.exclusions = [entry.model_dump(mode="json") for entry in exclusions]
        self.orphans = [record.model_dump(mode="json") for record in orphans]
        self.overlaps = [record.model_dump(mode="json") for record in overlaps]
        self.loops = [decision.to_dict() for decision in loops]

    def summary(self) -> Dict[str, Any]:
        return {
            "locale": self.locale.key,
            "mode": self.mode,
            "dry_run": self.dry_run,
            "started_at": self.started_at.isoformat(),
            "candidates": len(self.candidates),
            "accepted": len(self.accepted),
            "rejected": len(self.rejected),
            "unresolved": len(self.unresolved),
            "groups": len(self.groups),
            "clusters": len(self.clusters),
            "exclusions": len(self.exclusions),
            "orphans": len(self.orphans),
            "overlaps": len(self.overlaps),
            "adjudications_dispatched": self.adjudications_dispatched,
        }

    def write(self, base_dir: Path) -> Path:
        """Write every artifact as JSON under ``base_dir/<locale>/<timestamp>/``.

        Returns:
            Path: Directory holding the artifacts.
        """

        target = base_dir / self.locale.key / self.started_at.strftime("%Y%m%dT%H%M%S%fZ")
        target.mkdir(parents=True, exist_ok=True)
        artifacts: Dict[str, Any] = {
            "summary.json": self.summary(),
            "candidate_pairs.json": self.candidates,
            "accepted_pairs.json": self.accepted,
            "rejected_pairs.json": self.rejected,
            "unresolved_pairs.json": self.unresolved,
            "classification.json": self.classification,
            "question_groups.json": self.groups,
            "clusters.json": self.clusters,
            "exclusions.json": self.exclusions,
            "orphans.json": self.orphans,
            "overlaps.json": self.overlaps,
            "loops.json": self.loops,
        }
        for name, payload in artifacts.items():
            (target / name).write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        LOGGER.info("Wrote clustering report for %s to %s", self.locale.key, target)
        return target


def _guard_entry(pair: CandidatePair, decision: GuardDecision) -> Dict[str, Any]:
    return _pair_entry(pair, stage="guard", guard=decision.guard, reason=decision.reason)


__all__ = ["ClusteringReport"]
