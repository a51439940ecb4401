from __future__ import annotations

import logging
import time
from collections import Counter as Tally
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..config import EngineSettings
from ..integrations.slack import notify
from .builder import BatchBuilder, GroupPolicy, PayloadWeight, weight_policy
from .executor import BatchExecutor, ExecutionResult
from .operations import PairSpec
from .outcomes import PairResult, PairStatus, classify_pairs
from .retry import RetryStats, SelectiveRetry, pairs_with_status
from .verifier import SmartVerifier, VerificationReport

logger = logging.getLogger(__name__)


@dataclass
class FailureDetail:
    pair_index: int
    kind: str
    message: str
    code: Optional[int] = None


@dataclass
class RunReport:
    parent_group_id: str
    requested: int
    parents_created: int = 0
    children_created: int = 0
    status_counts: Dict[str, int] = field(default_factory=dict)
    orphans_recovered: int = 0
    orphans_deleted: int = 0
    retried_failures: int = 0
    failures: List[FailureDetail] = field(default_factory=list)
    groups_executed: int = 0
    aborted: bool = False
    verification: Optional[VerificationReport] = None
    pair_results: List[PairResult] = field(default_factory=list)
    elapsed_sec: float = 0.0

    @property
    def succeeded(self) -> bool:
        v = self.verification
        return bool(v and v.verified and v.shortfall == 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parent_group_id": self.parent_group_id,
            "requested": self.requested,
            "parents_created": self.parents_created,
            "children_created": self.children_created,
            "status_counts": dict(self.status_counts),
            "orphans_recovered": self.orphans_recovered,
            "orphans_deleted": self.orphans_deleted,
            "retried_failures": self.retried_failures,
            "failures": [vars(f).copy() for f in self.failures],
            "groups_executed": self.groups_executed,
            "aborted": self.aborted,
            "verification": self.verification.to_dict() if self.verification else None,
            "succeeded": self.succeeded,
            "elapsed_sec": round(self.elapsed_sec, 3),
        }


class BatchOrchestrator:
    """One run: build, execute, classify, retry, verify.

    After the first batch request has gone out, ``run`` always returns a
    report. Per-pair failures are recorded and reconciled, never raised.
    """

    def __init__(
        self,
        client: Any,
        *,
        builder: Optional[BatchBuilder] = None,
        settings: Optional[EngineSettings] = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.builder = builder or BatchBuilder()
        self.settings = settings or EngineSettings()
        self.sleep = sleep
        self.monotonic = monotonic

    def policy_for(self, weight: PayloadWeight) -> GroupPolicy:
        return weight_policy(weight, self.settings.pairs_per_group, self.settings.group_delay_sec)

    def run(
        self,
        parent_group_id: str,
        specs: Sequence[PairSpec],
        *,
        original_parent_id: Optional[str] = None,
        user_access_token: Optional[str] = None,
        weight: PayloadWeight = PayloadWeight.LIGHT,
        expected_total: Optional[int] = None,
    ) -> RunReport:
        started = self.monotonic()
        specs = list(specs)
        for pos, spec in enumerate(specs):
            if spec.index != pos:
                raise ValueError(f"PairSpec at position {pos} has index {spec.index}")
        report = RunReport(parent_group_id=parent_group_id, requested=len(specs))
        s = self.settings

        executor = BatchExecutor(
            self.client,
            self.policy_for(weight),
            atomic_delay_sec=s.pair_retry_delay_sec,
            sleep=self.sleep,
            user_access_token=user_access_token,
        )
        ops = self.builder.build_pairs(parent_group_id, specs)
        execution = executor.execute(ops)
        report.groups_executed = execution.groups_executed
        report.aborted = execution.aborted

        pairs = self._classify(execution)
        report.pair_results = pairs
        self._record_failures(report, pairs, s.failure_detail_limit)

        if execution.aborted:
            logger.error("[BATCH] Run aborted: credentials exhausted; skipping retries, verifying what landed")
        else:
            retry = SelectiveRetry(
                self.client,
                self.builder,
                retry_cap=s.retry_cap,
                orphan_delay_sec=s.orphan_retry_delay_sec,
                pair_delay_sec=s.pair_retry_delay_sec,
                sleep=self.sleep,
                user_access_token=user_access_token,
            )
            orphan_stats = retry.retry_orphans(pairs_with_status(pairs, PairStatus.ORPHAN), specs)
            failure_stats = retry.retry_total_failures(
                pairs_with_status(pairs, PairStatus.TOTAL_FAILURE), specs, parent_group_id,
            )
            self._apply_retry_stats(report, orphan_stats, failure_stats)

        verifier = SmartVerifier(
            self.client,
            copy_pattern=s.copy_pattern,
            delete_delay_sec=s.verify_delete_delay_sec,
            sleep=self.sleep,
            user_access_token=user_access_token,
        )
        if expected_total is None:
            expected_total = len(specs) + (1 if original_parent_id else 0)
        report.verification = verifier.verify_and_correct(parent_group_id, expected_total, original_parent_id)

        self._tally(report, pairs)
        report.elapsed_sec = self.monotonic() - started
        self._announce(report)
        return report

    @staticmethod
    def _classify(execution: ExecutionResult) -> List[PairResult]:
        pairs: List[PairResult] = []
        for outcome in sorted(execution.groups, key=lambda g: g.pair_offset):
            pairs.extend(classify_pairs(outcome.results, outcome.pair_offset))
        return pairs

    @staticmethod
    def _record_failures(report: RunReport, pairs: Sequence[PairResult], limit: int) -> None:
        for pair in pairs:
            if pair.status is PairStatus.COMPLETE:
                continue
            if len(report.failures) >= limit:
                break
            report.failures.append(FailureDetail(
                pair_index=pair.pair_index,
                kind=pair.status.value,
                message=pair.error_message,
                code=(pair.error or {}).get("code"),
            ))

    @staticmethod
    def _apply_retry_stats(report: RunReport, orphans: RetryStats, failures: RetryStats) -> None:
        report.orphans_recovered = orphans.recovered
        report.orphans_deleted = orphans.deleted
        report.retried_failures = failures.attempted

    @staticmethod
    def _tally(report: RunReport, pairs: Sequence[PairResult]) -> None:
        report.status_counts = dict(Tally(p.status.value for p in pairs))
        report.parents_created = sum(
            1 for p in pairs if p.parent_id and p.status in (PairStatus.COMPLETE, PairStatus.ORPHAN, PairStatus.UNKNOWN)
        )
        report.children_created = sum(1 for p in pairs if p.status is PairStatus.COMPLETE)

    @staticmethod
    def _announce(report: RunReport) -> None:
        v = report.verification
        summary = (
            f"Batch run on {report.parent_group_id}: {v.actual_child_count if v else '?'}"
            f"/{v.expected_count if v else report.requested} complete"
        )
        if v is None or not v.verified:
            summary += f" (verification failed: {v.error if v else 'not run'})"
        elif v.shortfall:
            summary += f", shortfall {v.shortfall}"
        if report.failures:
            summary += f", {len(report.failures)} pair failures recorded"
        if report.succeeded and not report.failures:
            logger.info(f"[BATCH] {summary}")
            return
        logger.warning(f"[BATCH] {summary}")
        notify(summary, "warn", "default")
