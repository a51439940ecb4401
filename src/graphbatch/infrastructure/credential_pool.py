from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from ..config import (
    DEFAULT_HOURLY_QUOTA,
    HOURLY_WINDOW_SEC,
    PRIMARY_CREDENTIAL_ID,
    SHARED_LIMIT_MIN_CREDENTIALS,
    SHARED_LIMIT_WINDOW_SEC,
    USAGE_WARNING_PCT,
    load_settings,
)
from ..integrations.slack import notify
from ..utils import Clock, RealClock
from .error_handling import CredentialConfigError

logger = logging.getLogger(__name__)


@dataclass
class Credential:
    credential_id: str
    name: str
    priority: int = 1
    hourly_quota: int = DEFAULT_HOURLY_QUOTA
    access_token: Optional[str] = None
    is_backup: bool = True
    encrypted: bool = False
    calls_used: int = 0
    exhausted: bool = False
    exhausted_at: Optional[datetime] = None

    @property
    def remaining(self) -> int:
        return max(0, self.hourly_quota - self.calls_used)

    @property
    def usage_pct(self) -> float:
        if self.hourly_quota <= 0:
            return 100.0
        return round(self.calls_used / self.hourly_quota * 100.0, 1)

    def has_capacity(self) -> bool:
        return not self.exhausted and self.calls_used < self.hourly_quota

    def __repr__(self) -> str:
        # Never print tokens
        return (
            f"Credential(id={self.credential_id!r}, name={self.name!r}, priority={self.priority}, "
            f"used={self.calls_used}/{self.hourly_quota}, exhausted={self.exhausted})"
        )


def validate_credentials(credentials: Iterable[Credential]) -> List[str]:
    problems: List[str] = []
    seen = set()
    for idx, cred in enumerate(credentials):
        label = cred.credential_id or f"#{idx}"
        if not cred.credential_id:
            problems.append(f"credential {label}: missing id")
        if not cred.name:
            problems.append(f"credential {label}: missing name")
        if cred.is_backup and not cred.access_token:
            problems.append(f"credential {label}: backup credential has no token")
        if cred.hourly_quota <= 0:
            problems.append(f"credential {label}: hourly_quota must be > 0")
        if cred.priority <= 0:
            problems.append(f"credential {label}: priority must be > 0")
        if cred.credential_id in seen:
            problems.append(f"credential {label}: duplicate id")
        seen.add(cred.credential_id)
    return problems


class CredentialPool:
    """Process-wide pool of app credentials with hourly call quotas.

    Every mutation (usage, exhaustion, reset) happens under one lock, so
    concurrent runs sharing the pool only ever observe whole steps.
    ``select`` hands out snapshots, never the internal records.
    """

    def __init__(
        self,
        credentials: Iterable[Credential],
        *,
        clock: Optional[Clock] = None,
        window_sec: int = HOURLY_WINDOW_SEC,
        shared_window_sec: float = SHARED_LIMIT_WINDOW_SEC,
        shared_min_credentials: int = SHARED_LIMIT_MIN_CREDENTIALS,
        notifier: Callable[..., None] = notify,
    ) -> None:
        creds = [replace(c) for c in credentials]
        problems = validate_credentials(creds)
        if problems:
            raise CredentialConfigError(problems)
        self._order = {c.credential_id: i for i, c in enumerate(creds)}
        self._credentials: Dict[str, Credential] = {c.credential_id: c for c in creds}
        self.clock = clock or RealClock()
        self.window_sec = window_sec
        self.shared_window_sec = shared_window_sec
        self.shared_min_credentials = shared_min_credentials
        self._notify = notifier
        self._lock = threading.Lock()
        self.window_start = self.clock.now_utc()
        self.last_reset = self.window_start
        self.shared_limit_detected_at: Optional[datetime] = None
        logger.info(
            f"[POOL] Initialised with {len(creds)} credentials "
            f"({sum(1 for c in creds if c.is_backup)} backups), capacity {self.total_capacity()}/h"
        )

    def __len__(self) -> int:
        return len(self._credentials)

    @property
    def next_reset(self) -> datetime:
        return self.window_start + timedelta(seconds=self.window_sec)

    @property
    def shared_limit_detected(self) -> bool:
        return self.shared_limit_detected_at is not None

    # ------------- Selection -------------
    def select(self, preferred_token: Optional[str] = None) -> Optional[Credential]:
        """Return the highest-priority usable credential, or None when all are exhausted.

        ``preferred_token`` is the caller's own user token. It is injected into
        the primary credential, which stores no token of its own.
        """
        with self._lock:
            self._reset_if_elapsed_locked()
            candidates = []
            for cred in self._credentials.values():
                if not cred.has_capacity():
                    continue
                token = cred.access_token if cred.is_backup else (preferred_token or cred.access_token)
                if not token:
                    continue
                candidates.append((cred.priority, self._order[cred.credential_id], cred, token))
            if not candidates:
                return None
            candidates.sort(key=lambda t: (t[0], t[1]))
            _, _, chosen, token = candidates[0]
            return replace(chosen, access_token=token)

    # ------------- Mutation -------------
    def record_usage(self, credential_id: str, calls: int = 1) -> None:
        with self._lock:
            cred = self._credentials.get(credential_id)
            if cred is None:
                logger.warning(f"[POOL] record_usage for unknown credential {credential_id!r}")
                return
            cred.calls_used = min(cred.hourly_quota, cred.calls_used + max(0, calls))
            pct = cred.usage_pct
            used, quota = cred.calls_used, cred.hourly_quota
        logger.debug(f"[POOL] {cred.name}: {used}/{quota} ({pct:.1f}%)")
        if used >= quota:
            logger.warning(f"[POOL] {cred.name} reached its hourly quota ({quota})")

    def mark_exhausted(self, credential_id: str, reason: str = "") -> None:
        alert = None
        with self._lock:
            cred = self._credentials.get(credential_id)
            if cred is None:
                logger.warning(f"[POOL] mark_exhausted for unknown credential {credential_id!r}")
                return
            now = self.clock.now_utc()
            cred.exhausted = True
            cred.exhausted_at = now
            cred.calls_used = cred.hourly_quota
            alert = self._check_shared_limit_locked(now)
        logger.warning(f"[POOL] {cred.name} marked exhausted{': ' + reason if reason else ''}")
        if alert:
            logger.error(f"[POOL] {alert}")
            try:
                self._notify(alert, "warn", "alerts")
            except Exception as e:
                logger.warning(f"[POOL] Shared-limit alert failed: {e}")

    def _check_shared_limit_locked(self, now: datetime) -> Optional[str]:
        horizon = now - timedelta(seconds=self.shared_window_sec)
        recent = [
            c for c in self._credentials.values()
            if c.exhausted and c.exhausted_at is not None and c.exhausted_at >= horizon
        ]
        if len(recent) < self.shared_min_credentials or self.shared_limit_detected_at is not None:
            return None
        self.shared_limit_detected_at = now
        names = ", ".join(sorted(c.name for c in recent))
        return (
            f"Shared rate limit suspected: {len(recent)} credentials exhausted within "
            f"{self.shared_window_sec:g}s ({names}). The limit is likely enforced upstream "
            f"(same ad account or user); rotating credentials will not help."
        )

    def _reset_if_elapsed_locked(self) -> bool:
        now = self.clock.now_utc()
        if now < self.next_reset:
            return False
        self._reset_locked(now)
        logger.info(f"[POOL] Hourly window elapsed; usage reset (next reset {self.next_reset.isoformat()})")
        return True

    def _reset_locked(self, now: datetime) -> None:
        for cred in self._credentials.values():
            cred.calls_used = 0
            cred.exhausted = False
            cred.exhausted_at = None
        self.window_start = now
        self.last_reset = now
        self.shared_limit_detected_at = None

    def reset_if_window_elapsed(self) -> bool:
        with self._lock:
            return self._reset_if_elapsed_locked()

    def force_reset(self) -> None:
        with self._lock:
            self._reset_locked(self.clock.now_utc())
        logger.info("[POOL] Usage force-reset")

    # ------------- Introspection -------------
    def total_capacity(self) -> int:
        return sum(c.hourly_quota for c in self._credentials.values())

    def is_available(self, credential_id: str) -> bool:
        with self._lock:
            self._reset_if_elapsed_locked()
            cred = self._credentials.get(credential_id)
            return bool(cred and cred.has_capacity())

    def remaining_capacity(self, credential_id: str) -> int:
        with self._lock:
            self._reset_if_elapsed_locked()
            cred = self._credentials.get(credential_id)
            return cred.remaining if cred and not cred.exhausted else 0

    def seconds_until_reset(self) -> float:
        return max(0.0, (self.next_reset - self.clock.now_utc()).total_seconds())

    def get(self, credential_id: str) -> Optional[Credential]:
        with self._lock:
            cred = self._credentials.get(credential_id)
            return replace(cred) if cred else None

    def status(self) -> List[Dict[str, Any]]:
        with self._lock:
            self._reset_if_elapsed_locked()
            creds = sorted(self._credentials.values(), key=lambda c: (c.priority, self._order[c.credential_id]))
            active_id = next((c.credential_id for c in creds if c.has_capacity()), None)
            rows = []
            for c in creds:
                if c.exhausted:
                    state = "exhausted"
                elif c.usage_pct >= USAGE_WARNING_PCT:
                    state = "warning"
                elif c.credential_id == active_id:
                    state = "active"
                else:
                    state = "available"
                rows.append({
                    "id": c.credential_id,
                    "name": c.name,
                    "priority": c.priority,
                    "is_backup": c.is_backup,
                    "usage": c.calls_used,
                    "quota": c.hourly_quota,
                    "remaining": 0 if c.exhausted else c.remaining,
                    "percentage": c.usage_pct,
                    "status": state,
                    "exhausted_at": c.exhausted_at.isoformat() if c.exhausted_at else None,
                })
            return rows

    def summary(self) -> Dict[str, Any]:
        rows = self.status()
        capacity = sum(r["quota"] for r in rows)
        used = sum(r["usage"] for r in rows)
        return {
            "total_credentials": len(rows),
            "available": sum(1 for r in rows if r["status"] != "exhausted"),
            "exhausted": sum(1 for r in rows if r["status"] == "exhausted"),
            "total_capacity": capacity,
            "total_used": used,
            "total_remaining": sum(r["remaining"] for r in rows),
            "usage_percentage": round(used / capacity * 100.0, 1) if capacity else 0.0,
            "shared_limit_detected": self.shared_limit_detected,
            "last_reset": self.last_reset.isoformat(),
            "next_reset": self.next_reset.isoformat(),
            "minutes_until_reset": int(self.seconds_until_reset() // 60),
        }


def load_credentials(
    cfg: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> List[Credential]:
    """Build credentials from the ``credentials`` settings section.

    Backup tokens come from the environment variable each entry names.
    Backups whose variable is unset are skipped with a warning. With no
    section at all, a single primary credential is returned.
    """
    environ = os.environ if environ is None else environ
    entries = list((cfg or {}).get("credentials") or [])
    if not entries:
        return [Credential(PRIMARY_CREDENTIAL_ID, "Main App", priority=1, is_backup=False)]
    creds: List[Credential] = []
    for entry in entries:
        is_backup = bool(entry.get("is_backup", False))
        token = environ.get(entry["token_env"]) if entry.get("token_env") else None
        if is_backup and not token:
            logger.warning(f"[POOL] Skipping backup credential {entry['id']}: {entry.get('token_env') or 'token_env'} is not set")
            continue
        creds.append(Credential(
            credential_id=entry["id"],
            name=entry["name"],
            priority=int(entry.get("priority", 1)),
            hourly_quota=int(entry.get("hourly_quota", DEFAULT_HOURLY_QUOTA)),
            access_token=token,
            is_backup=is_backup,
            encrypted=bool(entry.get("encrypted", False)),
        ))
    return creds


_pool: Optional[CredentialPool] = None
_pool_lock = threading.Lock()


def configure_credential_pool(credentials: Iterable[Credential], **kwargs: Any) -> CredentialPool:
    global _pool
    pool = CredentialPool(credentials, **kwargs)
    with _pool_lock:
        _pool = pool
    return pool


def get_credential_pool() -> CredentialPool:
    global _pool
    with _pool_lock:
        if _pool is None:
            _pool = CredentialPool(load_credentials(load_settings()))
        return _pool


def reset_credential_pool() -> None:
    global _pool
    with _pool_lock:
        _pool = None
