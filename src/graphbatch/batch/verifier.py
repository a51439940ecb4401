from __future__ import annotations

import logging
import re
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from prometheus_client import Counter

from ..config import DEFAULT_COPY_PATTERN, VERIFY_DELETE_DELAY_SEC
from ..infrastructure.error_handling import AllCredentialsExhaustedError, ClassifiedError

logger = logging.getLogger(__name__)

M_DELETIONS = Counter("graphbatch_verifier_deletions_total", "Objects deleted by verification", ["reason"])


@dataclass
class Correction:
    action: str
    object_id: str
    name: str = ""
    reason: str = ""


@dataclass
class VerificationReport:
    expected_count: int
    actual_parent_count: int = 0
    actual_child_count: int = 0
    orphans_deleted: int = 0
    surplus_deleted: int = 0
    duplicates_deleted: int = 0
    shortfall: int = 0
    verified: bool = False
    error: Optional[str] = None
    corrections: List[Correction] = field(default_factory=list)

    @property
    def deletions(self) -> int:
        return self.orphans_deleted + self.surplus_deleted + self.duplicates_deleted

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _id_key(object_id: str):
    return (0, int(object_id), "") if object_id.isdigit() else (1, 0, object_id)


class SmartVerifier:
    """Reads the real campaign state back and corrects it toward the requested count.

    Deletes ad sets without ads (orphans), extra ads inside one ad set, and
    the highest-numbered "- Copy N" ad sets beyond the expected count. Never
    creates anything: a count below target is reported as a shortfall.
    Running it twice in a row makes no further changes.
    """

    def __init__(
        self,
        client: Any,
        *,
        copy_pattern: str = DEFAULT_COPY_PATTERN,
        delete_delay_sec: float = VERIFY_DELETE_DELAY_SEC,
        sleep: Callable[[float], None] = time.sleep,
        user_access_token: Optional[str] = None,
    ) -> None:
        self.client = client
        self.copy_re = re.compile(copy_pattern)
        self.delete_delay_sec = delete_delay_sec
        self.sleep = sleep
        self.user_access_token = user_access_token

    def copy_number(self, name: str) -> Optional[int]:
        m = self.copy_re.search(name or "")
        return int(m.group(1)) if m else None

    def _delete(self, report: VerificationReport, object_id: str, name: str, reason: str) -> bool:
        self.sleep(self.delete_delay_sec)
        try:
            self.client.delete(object_id, user_access_token=self.user_access_token)
        except (ClassifiedError, AllCredentialsExhaustedError) as e:
            logger.error(f"[VERIFY] Failed to delete {object_id} ({reason}): {e}")
            report.corrections.append(Correction("delete_failed", object_id, name, f"{reason}: {e}"))
            return False
        M_DELETIONS.labels(reason).inc()
        report.corrections.append(Correction("deleted", object_id, name, reason))
        logger.info(f"[VERIFY] Deleted {reason} {object_id} {name!r}".rstrip())
        return True

    def verify_and_correct(
        self,
        parent_group_id: str,
        expected_child_count: int,
        original_parent_id: Optional[str] = None,
    ) -> VerificationReport:
        report = VerificationReport(expected_count=expected_child_count)
        try:
            parents = self.client.read_children(parent_group_id, user_access_token=self.user_access_token)
            children = self.client.read_grandchildren(parent_group_id, user_access_token=self.user_access_token)
        except (ClassifiedError, AllCredentialsExhaustedError) as e:
            logger.error(f"[VERIFY] Could not read state of {parent_group_id}: {e}")
            report.error = str(e)
            return report

        protected = str(original_parent_id) if original_parent_id else None
        names = {p["id"]: p.get("name") or "" for p in parents}
        children_of: Dict[str, List[str]] = {pid: [] for pid in names}
        for c in children:
            if c.get("parent_id") in children_of:
                children_of[c["parent_id"]].append(c["id"])
        remaining: Set[str] = set(names)
        expected = expected_child_count
        if protected and not children_of.get(protected):
            # The count includes the original parent, which contributes no child here
            expected = max(0, expected - 1)
            report.expected_count = expected
            logger.info(f"[VERIFY] Original parent {protected} has no children, expecting {expected}")
        logger.info(
            f"[VERIFY] {parent_group_id}: {len(parents)} parents, {len(children)} children, "
            f"expected {expected}"
        )

        # Orphans: parents without any child
        for pid in sorted(names, key=_id_key):
            if children_of[pid] or pid == protected:
                continue
            if self._delete(report, pid, names[pid], "orphan"):
                report.orphans_deleted += 1
                remaining.discard(pid)

        # Duplicate children under one parent: keep the oldest
        for pid in sorted(remaining, key=_id_key):
            kids = sorted(children_of[pid], key=_id_key)
            for extra in kids[1:]:
                if self._delete(report, extra, names[pid], "duplicate_child"):
                    report.duplicates_deleted += 1
                    children_of[pid].remove(extra)

        # Surplus: highest copy number first, only among parents that have children
        populated = [pid for pid in remaining if children_of[pid]]
        excess = len(populated) - expected
        if excess > 0:
            candidates = sorted(
                (pid for pid in populated if pid != protected and self.copy_number(names[pid]) is not None),
                key=lambda pid: (self.copy_number(names[pid]), _id_key(pid)),
                reverse=True,
            )
            if len(candidates) < excess:
                logger.warning(
                    f"[VERIFY] {excess} surplus parents but only {len(candidates)} match the copy naming pattern"
                )
            for pid in candidates[:excess]:
                if self._delete(report, pid, names[pid], "surplus"):
                    report.surplus_deleted += 1
                    remaining.discard(pid)

        report.actual_parent_count = len(remaining)
        report.actual_child_count = sum(len(children_of[pid]) for pid in remaining)
        report.shortfall = max(0, expected - report.actual_child_count)
        report.verified = True
        log = logger.warning if report.shortfall else logger.info
        log(
            f"[VERIFY] {parent_group_id}: {report.actual_child_count}/{expected} complete, "
            f"deleted {report.orphans_deleted} orphans, {report.surplus_deleted} surplus, "
            f"{report.duplicates_deleted} duplicates, shortfall {report.shortfall}"
        )
        return report
