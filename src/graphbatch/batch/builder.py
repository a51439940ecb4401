from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..config import (
    GROUP_DELAY_HEAVY_SEC,
    GROUP_DELAY_LIGHT_SEC,
    GROUP_DELAY_MEDIUM_SEC,
    HEAVY_MEDIA_THRESHOLD,
    HEAVY_TEXT_THRESHOLD,
    MAX_OPERATIONS_PER_GROUP,
    PAIRS_PER_GROUP_HEAVY,
    PAIRS_PER_GROUP_LIGHT,
    PAIRS_PER_GROUP_MEDIUM,
)
from .operations import Operation, PairSpec, parent_tag, result_ref

logger = logging.getLogger(__name__)

PayloadBuilder = Callable[[int], Tuple[Dict[str, Any], Dict[str, Any]]]


class PayloadWeight(Enum):
    LIGHT = "light"
    MEDIUM = "medium"
    HEAVY = "heavy"


def assess_payload(media_count: int = 1, text_variation_count: int = 1, dynamic_creative: bool = False) -> PayloadWeight:
    many_media = media_count > HEAVY_MEDIA_THRESHOLD
    many_texts = text_variation_count > HEAVY_TEXT_THRESHOLD
    if many_media and many_texts:
        return PayloadWeight.HEAVY
    if dynamic_creative or many_media or many_texts:
        return PayloadWeight.MEDIUM
    return PayloadWeight.LIGHT


@dataclass(frozen=True)
class GroupPolicy:
    pairs_per_group: int = PAIRS_PER_GROUP_LIGHT
    delay_sec: float = GROUP_DELAY_LIGHT_SEC

    @classmethod
    def for_weight(cls, weight: PayloadWeight) -> "GroupPolicy":
        if weight is PayloadWeight.HEAVY:
            return cls(PAIRS_PER_GROUP_HEAVY, GROUP_DELAY_HEAVY_SEC)
        if weight is PayloadWeight.MEDIUM:
            return cls(PAIRS_PER_GROUP_MEDIUM, GROUP_DELAY_MEDIUM_SEC)
        return cls(PAIRS_PER_GROUP_LIGHT, GROUP_DELAY_LIGHT_SEC)

    @property
    def ops_per_group(self) -> int:
        # Whole pairs only, so a child never lands in a different group than its parent.
        return max(2, min(self.pairs_per_group * 2, MAX_OPERATIONS_PER_GROUP - MAX_OPERATIONS_PER_GROUP % 2))


class BatchBuilder:
    """Turns pair specs into Graph batch operations.

    Parents are ad sets created under the ad account and attached to the
    campaign (``parent_group_id``). Children are ads pointing at their parent
    through ``parent_link_field``.
    """

    def __init__(
        self,
        account_id: str = "",
        *,
        parent_edge: str = "adsets",
        child_edge: str = "ads",
        group_link_field: str = "campaign_id",
        parent_link_field: str = "adset_id",
    ) -> None:
        self.account_id = _normalize_account_id(account_id) if account_id else ""
        self.parent_edge = parent_edge
        self.child_edge = child_edge
        self.group_link_field = group_link_field
        self.parent_link_field = parent_link_field

    def _edge(self, edge: str) -> str:
        return f"{self.account_id}/{edge}" if self.account_id else edge

    def _parent_op(self, spec: PairSpec, parent_group_id: str) -> Operation:
        body = dict(spec.parent_body)
        body.setdefault(self.group_link_field, parent_group_id)
        return Operation("POST", self._edge(self.parent_edge), body, name=parent_tag(spec.index))

    def _child_op(self, spec: PairSpec, parent_ref: str) -> Operation:
        body = dict(spec.child_body)
        body[self.parent_link_field] = parent_ref
        return Operation("POST", self._edge(self.child_edge), body)

    def build_pairs(self, parent_group_id: str, specs: Sequence[PairSpec]) -> List[Operation]:
        """Interleave ``[parent_0, child_0, parent_1, child_1, ...]``.

        Each child references its parent by name tag, which only resolves
        when both land in the same batch request.
        """
        ops: List[Operation] = []
        for spec in specs:
            parent = self._parent_op(spec, parent_group_id)
            ops.append(parent)
            ops.append(self._child_op(spec, result_ref(parent.name)))
        logger.debug(f"[BATCH] Built {len(ops)} operations for {len(specs)} pairs")
        return ops

    def build_child(self, spec: PairSpec, parent_id: str) -> Operation:
        return self._child_op(spec, str(parent_id))

    def build_atomic_pair(self, spec: PairSpec, parent_group_id: str) -> List[Operation]:
        return self.build_pairs(parent_group_id, [spec])

    def build_pair_specs(self, count: int, payload_builder: PayloadBuilder, start_number: int = 1) -> List[PairSpec]:
        """Call ``payload_builder(copy_number)`` once per pair.

        The builder is expected to name parents ``"... - Copy N"`` so the
        verifier can find the highest-numbered surplus copies.
        """
        specs = []
        for i in range(count):
            parent_body, child_body = payload_builder(start_number + i)
            specs.append(PairSpec(i, start_number + i, dict(parent_body), dict(child_body)))
        return specs


def _normalize_account_id(account_id: str) -> str:
    account_id = str(account_id).strip()
    return account_id if account_id.startswith("act_") else f"act_{account_id}"


def pair_groups(ops: Sequence[Operation], ops_per_group: int) -> List[List[Operation]]:
    if len(ops) % 2:
        raise ValueError(f"Operation list must hold whole pairs, got {len(ops)} operations")
    if ops_per_group < 2 or ops_per_group % 2:
        raise ValueError(f"Group size must be an even number >= 2, got {ops_per_group}")
    return [list(ops[i:i + ops_per_group]) for i in range(0, len(ops), ops_per_group)]


def weight_policy(weight: PayloadWeight, pairs_per_group: Optional[int] = None, delay_sec: Optional[float] = None) -> GroupPolicy:
    base = GroupPolicy.for_weight(weight)
    return GroupPolicy(
        pairs_per_group=pairs_per_group or base.pairs_per_group,
        delay_sec=base.delay_sec if delay_sec is None else delay_sec,
    )
