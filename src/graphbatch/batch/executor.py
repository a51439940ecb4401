from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from prometheus_client import Counter

from ..config import PAIR_RETRY_DELAY_SEC
from ..infrastructure.error_handling import (
    AllCredentialsExhaustedError,
    AmbiguousTransientError,
    PermanentError,
    TransientError,
)
from .builder import GroupPolicy, pair_groups
from .operations import Operation
from .outcomes import synthetic_failure

logger = logging.getLogger(__name__)

M_GROUPS = Counter("graphbatch_batch_groups_total", "Batch requests by mode and outcome", ["mode", "outcome"])

RawResult = Optional[Dict[str, Any]]


@dataclass
class GroupOutcome:
    pair_offset: int
    pair_count: int
    results: List[RawResult]
    mode: str = "grouped"
    error: Optional[BaseException] = None


@dataclass
class ExecutionResult:
    groups: List[GroupOutcome] = field(default_factory=list)
    aborted: bool = False
    groups_executed: int = 0
    abort_error: Optional[BaseException] = None

    @property
    def results(self) -> List[RawResult]:
        out: List[RawResult] = []
        for g in self.groups:
            out.extend(g.results)
        return out


def check_references(group: Sequence[Operation]) -> None:
    """Every result reference must name an earlier operation in the same group."""
    seen = set()
    for pos, op in enumerate(group):
        for ref in op.references:
            if ref not in seen:
                raise ValueError(
                    f"Operation {pos} ({op.relative_url}) references {ref!r}, "
                    f"which is not an earlier operation in its batch request"
                )
        if op.name:
            seen.add(op.name)


class BatchExecutor:
    """Runs pair operations through the rotating client, one group per request.

    Groups run strictly in order with a pause between them. A group whose
    request fails at the transport level is never resent as a whole. Its pairs
    are re-issued one by one as two-operation groups instead.
    """

    def __init__(
        self,
        client: Any,
        policy: Optional[GroupPolicy] = None,
        *,
        atomic_delay_sec: float = PAIR_RETRY_DELAY_SEC,
        sleep: Callable[[float], None] = time.sleep,
        user_access_token: Optional[str] = None,
    ) -> None:
        self.client = client
        self.policy = policy or GroupPolicy()
        self.atomic_delay_sec = atomic_delay_sec
        self.sleep = sleep
        self.user_access_token = user_access_token

    def _submit(self, ops: Sequence[Operation]) -> List[RawResult]:
        raw = list(self.client.submit_group(list(ops), user_access_token=self.user_access_token))
        # Missing trailing results are unreported, not failed
        return raw[: len(ops)] + [None] * max(0, len(ops) - len(raw))

    def execute(self, operations: Sequence[Operation]) -> ExecutionResult:
        groups = pair_groups(operations, self.policy.ops_per_group)
        for group in groups:
            check_references(group)

        result = ExecutionResult()
        contacted = False
        pair_offset = 0
        logger.info(
            f"[BATCH] Executing {len(operations)} ops in {len(groups)} groups "
            f"({self.policy.pairs_per_group} pairs/group, {self.policy.delay_sec:g}s apart)"
        )

        for gi, group in enumerate(groups):
            pairs = len(group) // 2
            if result.aborted:
                result.groups.append(self._failed(pair_offset, pairs, result.abort_error, "skipped"))
                pair_offset += pairs
                continue
            if gi > 0:
                self.sleep(self.policy.delay_sec)

            try:
                raw = self._submit(group)
            except AllCredentialsExhaustedError as e:
                if not contacted:
                    raise
                logger.error(f"[BATCH] Group {gi + 1}/{len(groups)}: credentials exhausted, aborting remaining groups")
                result.aborted = True
                result.abort_error = e
                result.groups.append(self._failed(pair_offset, pairs, e, "exhausted"))
            except AmbiguousTransientError as e:
                contacted = True
                logger.warning(
                    f"[BATCH] Group {gi + 1}/{len(groups)}: ambiguous failure, "
                    f"{pairs} pairs deferred to verification: {e}"
                )
                M_GROUPS.labels("grouped", "ambiguous").inc()
                result.groups.append(GroupOutcome(pair_offset, pairs, [None] * len(group), "grouped", e))
            except PermanentError as e:
                contacted = True
                logger.error(f"[BATCH] Group {gi + 1}/{len(groups)}: permanent failure: {e}")
                result.groups.append(self._failed(pair_offset, pairs, e, "permanent"))
            except TransientError as e:
                contacted = True
                logger.warning(
                    f"[BATCH] Group {gi + 1}/{len(groups)}: request failed ({e}); "
                    f"falling back to {pairs} atomic pair requests"
                )
                M_GROUPS.labels("grouped", "fallback").inc()
                self._run_atomic(group, pair_offset, result)
            else:
                contacted = True
                M_GROUPS.labels("grouped", "ok").inc()
                result.groups.append(GroupOutcome(pair_offset, pairs, list(raw)))
            result.groups_executed += 1
            pair_offset += pairs

        return result

    def _failed(self, pair_offset: int, pairs: int, error: Optional[BaseException], outcome: str, mode: str = "grouped") -> GroupOutcome:
        M_GROUPS.labels(mode, outcome).inc()
        code = getattr(error, "code", None)
        message = str(error) if error else "not attempted"
        retryable = outcome != "permanent"
        return GroupOutcome(
            pair_offset,
            pairs,
            [synthetic_failure(message, code, retryable) for _ in range(pairs * 2)],
            mode,
            error,
        )

    def _run_atomic(self, group: Sequence[Operation], pair_offset: int, result: ExecutionResult) -> None:
        for k in range(0, len(group), 2):
            offset = pair_offset + k // 2
            if result.aborted:
                result.groups.append(self._failed(offset, 1, result.abort_error, "skipped", "atomic"))
                continue
            self.sleep(self.atomic_delay_sec)
            pair_ops = group[k:k + 2]
            try:
                raw = self._submit(pair_ops)
            except AllCredentialsExhaustedError as e:
                result.aborted = True
                result.abort_error = e
                result.groups.append(self._failed(offset, 1, e, "exhausted", "atomic"))
            except AmbiguousTransientError as e:
                M_GROUPS.labels("atomic", "ambiguous").inc()
                result.groups.append(GroupOutcome(offset, 1, [None, None], "atomic", e))
            except PermanentError as e:
                logger.warning(f"[BATCH] Atomic pair {offset} rejected: {e}")
                result.groups.append(self._failed(offset, 1, e, "permanent", "atomic"))
            except TransientError as e:
                logger.warning(f"[BATCH] Atomic pair {offset} failed: {e}")
                result.groups.append(self._failed(offset, 1, e, "failed", "atomic"))
            else:
                M_GROUPS.labels("atomic", "ok").inc()
                result.groups.append(GroupOutcome(offset, 1, list(raw), "atomic"))
