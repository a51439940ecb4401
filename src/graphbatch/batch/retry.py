from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence

from ..config import ORPHAN_RETRY_DELAY_SEC, PAIR_RETRY_DELAY_SEC, TOTAL_FAILURE_RETRY_CAP
from ..infrastructure.error_handling import (
    AllCredentialsExhaustedError,
    AmbiguousTransientError,
    ClassifiedError,
)
from .builder import BatchBuilder
from .operations import PairSpec
from .outcomes import PairResult, PairStatus, ResultState, classify_pair, parse_result

logger = logging.getLogger(__name__)


@dataclass
class RetryStats:
    attempted: int = 0
    recovered: int = 0
    deleted: int = 0
    unknown: int = 0
    shortfall: int = 0
    skipped: int = 0
    left_orphaned: int = 0
    stopped: bool = False


class SelectiveRetry:
    """Second pass over non-complete pairs.

    Orphans get only their missing child, created against the real parent id.
    Total failures are retried whole, as two-operation requests, up to a hard cap.
    Nothing here is retried twice.
    """

    def __init__(
        self,
        client: Any,
        builder: BatchBuilder,
        *,
        retry_cap: int = TOTAL_FAILURE_RETRY_CAP,
        orphan_delay_sec: float = ORPHAN_RETRY_DELAY_SEC,
        pair_delay_sec: float = PAIR_RETRY_DELAY_SEC,
        sleep: Callable[[float], None] = time.sleep,
        user_access_token: Optional[str] = None,
    ) -> None:
        self.client = client
        self.builder = builder
        self.retry_cap = retry_cap
        self.orphan_delay_sec = orphan_delay_sec
        self.pair_delay_sec = pair_delay_sec
        self.sleep = sleep
        self.user_access_token = user_access_token

    def _delete_parent(self, pair: PairResult) -> bool:
        try:
            self.client.delete(pair.parent_id, user_access_token=self.user_access_token)
        except (ClassifiedError, AllCredentialsExhaustedError) as e:
            logger.error(f"[RETRY] Could not delete orphan parent {pair.parent_id} of pair {pair.pair_index}: {e}")
            return False
        logger.info(f"[RETRY] Deleted orphan parent {pair.parent_id} of pair {pair.pair_index}")
        return True

    # ------------- Orphans -------------
    def retry_orphans(self, orphans: Sequence[PairResult], specs: Sequence[PairSpec]) -> RetryStats:
        stats = RetryStats()
        for n, pair in enumerate(orphans):
            if stats.stopped:
                stats.skipped += 1
                continue
            if n > 0:
                self.sleep(self.orphan_delay_sec)
            stats.attempted += 1
            op = self.builder.build_child(specs[pair.pair_index], pair.parent_id)
            try:
                raw = self.client.submit_group([op], user_access_token=self.user_access_token)
                child = parse_result(raw[0] if raw else None)
            except AmbiguousTransientError as e:
                pair.transition(PairStatus.UNKNOWN, error={"message": str(e), "code": e.code})
                stats.unknown += 1
                continue
            except AllCredentialsExhaustedError as e:
                logger.error(f"[RETRY] Credentials exhausted during orphan retry: {e}")
                stats.stopped = True
                stats.left_orphaned += 1
                continue
            except ClassifiedError as e:
                child = parse_result({"code": None, "body": {"error": {"message": str(e), "code": e.code}}})

            if child.state is ResultState.SUCCESS:
                pair.transition(PairStatus.COMPLETE, child_id=child.object_id, error=None)
                stats.recovered += 1
                logger.info(f"[RETRY] Orphan pair {pair.pair_index} recovered (child {child.object_id})")
            elif child.state is ResultState.UNKNOWN:
                pair.transition(PairStatus.UNKNOWN)
                stats.unknown += 1
            else:
                pair.error = {"message": child.message, "code": child.code}
                if self._delete_parent(pair):
                    pair.transition(PairStatus.DELETED)
                    stats.deleted += 1
                else:
                    stats.left_orphaned += 1
        return stats

    # ------------- Total failures -------------
    def retry_total_failures(
        self,
        failures: Sequence[PairResult],
        specs: Sequence[PairSpec],
        parent_group_id: str,
        cap: Optional[int] = None,
    ) -> RetryStats:
        cap = self.retry_cap if cap is None else cap
        stats = RetryStats()
        for pair in failures:
            if not pair.retryable:
                logger.info(f"[RETRY] Pair {pair.pair_index} was rejected permanently, not resending")
                pair.transition(PairStatus.SHORTFALL)
                stats.shortfall += 1
                stats.skipped += 1
                continue
            if stats.attempted >= cap or stats.stopped:
                pair.transition(PairStatus.SHORTFALL)
                stats.shortfall += 1
                stats.skipped += 1
                continue
            if stats.attempted > 0:
                self.sleep(self.pair_delay_sec)
            stats.attempted += 1
            ops = self.builder.build_atomic_pair(specs[pair.pair_index], parent_group_id)
            try:
                raw = list(self.client.submit_group(ops, user_access_token=self.user_access_token))
            except AmbiguousTransientError as e:
                pair.transition(PairStatus.UNKNOWN, error={"message": str(e), "code": e.code})
                stats.unknown += 1
                continue
            except AllCredentialsExhaustedError as e:
                logger.error(f"[RETRY] Credentials exhausted during pair retry: {e}")
                stats.stopped = True
                pair.transition(PairStatus.SHORTFALL)
                stats.shortfall += 1
                continue
            except ClassifiedError as e:
                logger.warning(f"[RETRY] Pair {pair.pair_index} retry failed: {e}")
                pair.transition(PairStatus.SHORTFALL, error={"message": str(e), "code": e.code})
                stats.shortfall += 1
                continue

            raw = raw[:2] + [None] * max(0, 2 - len(raw))
            parent, child = parse_result(raw[0]), parse_result(raw[1])
            status = classify_pair(parent, child)
            if status is PairStatus.COMPLETE:
                pair.transition(PairStatus.COMPLETE, parent_id=parent.object_id, child_id=child.object_id, error=None)
                stats.recovered += 1
                logger.info(f"[RETRY] Pair {pair.pair_index} recovered on retry")
            elif status is PairStatus.ORPHAN:
                # Never leave the retry's own parent behind without a child
                pair.parent_id = parent.object_id
                pair.error = {"message": child.message, "code": child.code}
                if self._delete_parent(pair):
                    pair.transition(PairStatus.DELETED)
                    stats.deleted += 1
                else:
                    pair.transition(PairStatus.ORPHAN)
                    stats.left_orphaned += 1
            elif status is PairStatus.UNKNOWN:
                pair.transition(PairStatus.UNKNOWN, parent_id=parent.object_id)
                stats.unknown += 1
            else:
                pair.transition(PairStatus.SHORTFALL, error={"message": parent.message, "code": parent.code})
                stats.shortfall += 1
        return stats


def pairs_with_status(pairs: Sequence[PairResult], status: PairStatus) -> List[PairResult]:
    return [p for p in pairs if p.status is status]
