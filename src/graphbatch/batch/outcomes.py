from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Sequence

from prometheus_client import Counter

logger = logging.getLogger(__name__)

M_PAIRS = Counter("graphbatch_pair_outcomes_total", "Pair classifications by status", ["status"])


class ResultState(Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ParsedResult:
    state: ResultState
    object_id: Optional[str] = None
    code: Optional[int] = None
    message: str = ""
    error: Optional[Dict[str, Any]] = None
    retryable: bool = True

    @property
    def ok(self) -> bool:
        return self.state is ResultState.SUCCESS


UNKNOWN_RESULT = ParsedResult(ResultState.UNKNOWN, message="no result reported")


def synthetic_failure(message: str, code: Optional[int] = None, retryable: bool = True) -> Dict[str, Any]:
    """Raw result standing in for an operation whose whole request failed.

    ``retryable=False`` marks a request rejected permanently; pairs built from
    it are never resent.
    """
    return {
        "code": None,
        "body": {"error": {"message": message, "code": code}},
        "synthetic": True,
        "retryable": retryable,
    }


def _decode_body(body: Any) -> Any:
    if isinstance(body, (dict, list)) or body is None:
        return body
    try:
        return json.loads(body)
    except (TypeError, ValueError):
        return None


def parse_result(raw: Optional[Dict[str, Any]]) -> ParsedResult:
    """Three-valued parse of one batch result.

    ``None`` means the platform never reported the operation, and 5xx
    results flagged ``is_transient`` may have been applied anyway. Both are
    UNKNOWN. A 200 carrying an error object is a FAILURE.
    """
    if raw is None:
        return UNKNOWN_RESULT
    status = raw.get("code")
    body = _decode_body(raw.get("body"))
    err = body.get("error") if isinstance(body, dict) else None
    if isinstance(err, dict):
        code = err.get("code")
        message = str(err.get("message") or err.get("error_user_msg") or "")
        if isinstance(status, int) and 500 <= status < 600 and err.get("is_transient"):
            return ParsedResult(ResultState.UNKNOWN, code=code, message=message, error=err)
        return ParsedResult(
            ResultState.FAILURE, code=code, message=message, error=err, retryable=bool(raw.get("retryable", True)),
        )
    if status == 200 and isinstance(body, dict) and body.get("id"):
        return ParsedResult(ResultState.SUCCESS, object_id=str(body["id"]))
    if isinstance(status, int) and 500 <= status < 600:
        return ParsedResult(ResultState.FAILURE, code=status, message=f"HTTP {status}")
    return ParsedResult(
        ResultState.FAILURE,
        code=status if isinstance(status, int) else None,
        message=f"unexpected result (HTTP {status}): {str(raw.get('body'))[:200]}",
    )


class PairStatus(Enum):
    PENDING = "pending"
    COMPLETE = "complete"
    ORPHAN = "orphan"
    TOTAL_FAILURE = "total_failure"
    UNKNOWN = "unknown"
    DELETED = "deleted"
    SHORTFALL = "shortfall"


ALLOWED_TRANSITIONS: Dict[PairStatus, FrozenSet[PairStatus]] = {
    PairStatus.PENDING: frozenset({PairStatus.COMPLETE, PairStatus.ORPHAN, PairStatus.TOTAL_FAILURE, PairStatus.UNKNOWN}),
    PairStatus.ORPHAN: frozenset({PairStatus.COMPLETE, PairStatus.DELETED, PairStatus.UNKNOWN}),
    PairStatus.TOTAL_FAILURE: frozenset({
        PairStatus.COMPLETE, PairStatus.DELETED, PairStatus.SHORTFALL, PairStatus.UNKNOWN, PairStatus.ORPHAN,
    }),
    PairStatus.COMPLETE: frozenset(),
    PairStatus.UNKNOWN: frozenset(),
    PairStatus.DELETED: frozenset(),
    PairStatus.SHORTFALL: frozenset(),
}


@dataclass
class PairResult:
    pair_index: int
    parent_id: Optional[str] = None
    child_id: Optional[str] = None
    status: PairStatus = PairStatus.PENDING
    error: Optional[Dict[str, Any]] = None
    retryable: bool = True
    history: List[PairStatus] = field(default_factory=list)

    @property
    def error_message(self) -> str:
        return str((self.error or {}).get("message") or "")

    def transition(self, status: PairStatus, **changes: Any) -> None:
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise ValueError(f"Pair {self.pair_index}: illegal transition {self.status.value} -> {status.value}")
        self.history.append(self.status)
        self.status = status
        for key, value in changes.items():
            setattr(self, key, value)
        M_PAIRS.labels(status.value).inc()


def classify_pair(parent: ParsedResult, child: ParsedResult) -> PairStatus:
    if parent.state is ResultState.FAILURE:
        return PairStatus.TOTAL_FAILURE
    if parent.state is ResultState.UNKNOWN:
        return PairStatus.UNKNOWN
    if child.state is ResultState.SUCCESS:
        return PairStatus.COMPLETE
    if child.state is ResultState.FAILURE:
        return PairStatus.ORPHAN
    return PairStatus.UNKNOWN


def _error_of(parent: ParsedResult, child: ParsedResult, status: PairStatus) -> Optional[Dict[str, Any]]:
    source = parent if status is PairStatus.TOTAL_FAILURE or parent.state is ResultState.UNKNOWN else child
    if source.state is ResultState.SUCCESS:
        return None
    return {"message": source.message, "code": source.code}


def classify_pairs(raw_results: Sequence[Optional[Dict[str, Any]]], pair_offset: int = 0) -> List[PairResult]:
    """Walk interleaved ``[parent, child, ...]`` results two at a time."""
    if len(raw_results) % 2:
        raise ValueError(f"Expected interleaved pair results, got {len(raw_results)} results")
    pairs: List[PairResult] = []
    for k in range(0, len(raw_results), 2):
        parent = parse_result(raw_results[k])
        child = parse_result(raw_results[k + 1])
        status = classify_pair(parent, child)
        pair = PairResult(pair_offset + k // 2)
        pair.transition(
            status,
            parent_id=parent.object_id,
            child_id=child.object_id if status is PairStatus.COMPLETE else None,
            error=_error_of(parent, child, status),
            retryable=parent.retryable,
        )
        if status is not PairStatus.COMPLETE:
            logger.info(f"[BATCH] Pair {pair.pair_index}: {status.value} ({pair.error_message or 'no detail'})")
        pairs.append(pair)
    return pairs
