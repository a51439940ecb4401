from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

import requests
from prometheus_client import Counter

from ..config import MAX_ROTATION_ATTEMPTS
from ..infrastructure.credential_pool import Credential, CredentialPool, get_credential_pool
from ..infrastructure.error_handling import (
    DEFAULT_RULES,
    AllCredentialsExhaustedError,
    DecisionKind,
    ErrorRule,
    PermanentError,
    RetryConfig,
    TransportError,
    calculate_backoff_delay,
    classify_error,
    error_class_for,
)
from .slack import notify

logger = logging.getLogger(__name__)

T = TypeVar("T")
TokenDecoder = Callable[[str], str]

M_CALLS = Counter("graphbatch_graph_calls_total", "Graph calls by credential and outcome", ["credential", "outcome"])
M_ROTATIONS = Counter("graphbatch_credential_rotations_total", "Credential rotations by reason", ["reason"])


class RotatingGraphClient:
    """Wraps every remote call with credential selection, rotation and typed retry.

    One ``call`` makes at most ``min(max_attempts, len(pool))`` credential
    attempts. Within one attempt, transient failures are retried with backoff
    on the same credential, but only for calls marked idempotent.
    """

    def __init__(
        self,
        transport: Any,
        pool: Optional[CredentialPool] = None,
        *,
        max_attempts: int = MAX_ROTATION_ATTEMPTS,
        token_decoder: Optional[TokenDecoder] = None,
        retry_config: Optional[RetryConfig] = None,
        rules: Sequence[ErrorRule] = DEFAULT_RULES,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.transport = transport
        self.pool = pool or get_credential_pool()
        self.max_attempts = max(1, max_attempts)
        self.token_decoder = token_decoder
        self.retry_config = retry_config or RetryConfig()
        self.rules = rules
        self.sleep = sleep
        self._stats_lock = threading.Lock()
        self._stats = {"total_requests": 0, "successful": 0, "failed": 0, "rotations": 0}

    # ------------- Stats -------------
    def _bump(self, key: str) -> None:
        with self._stats_lock:
            self._stats[key] += 1

    def stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            out: Dict[str, Any] = dict(self._stats)
        total = out["total_requests"]
        out["success_rate"] = round(out["successful"] / total * 100.0, 1) if total else 0.0
        return out

    def rotation_status(self) -> Dict[str, Any]:
        return {
            "credentials": self.pool.status(),
            "summary": self.pool.summary(),
            "stats": self.stats(),
        }

    # ------------- Core -------------
    def _decode_token(self, cred: Credential) -> Credential:
        if not (cred.is_backup and cred.encrypted and self.token_decoder):
            return cred
        return replace(cred, access_token=self.token_decoder(cred.access_token or ""))

    def _rotate(self, cred: Credential, reason: str, detail: str) -> None:
        self.pool.mark_exhausted(cred.credential_id, detail)
        M_ROTATIONS.labels(reason).inc()
        self._bump("rotations")
        logger.warning(f"[ROTATE] {cred.name} -> next credential ({reason}: {detail})")

    def _check_operation_limits(self, cred: Credential, results: Sequence[Optional[Dict[str, Any]]]) -> None:
        """Rotate ``cred`` out when one operation of a batch hit a rate limit.

        The batch request itself succeeds in that case, so ``call`` never sees
        the error. Results are still returned to the caller unchanged.
        """
        for raw in results:
            if not isinstance(raw, dict):
                continue
            body = raw.get("body")
            if isinstance(body, str):
                try:
                    body = json.loads(body)
                except ValueError:
                    continue
            if not (isinstance(body, dict) and isinstance(body.get("error"), dict)):
                continue
            decision = classify_error({**body, "http_status": raw.get("code")}, self.rules)
            if decision.kind is DecisionKind.RATE_LIMITED:
                self._rotate(cred, "rate_limit", f"batch operation: {body['error'].get('message') or decision.reason}")
                return

    def call(
        self,
        request_fn: Callable[[Credential], T],
        *,
        operation: str = "call",
        idempotent: bool = False,
        user_access_token: Optional[str] = None,
    ) -> T:
        attempts_allowed = max(1, min(self.max_attempts, len(self.pool)))
        last_error: Optional[BaseException] = None

        for attempt in range(attempts_allowed):
            cred = self.pool.select(user_access_token)
            if cred is None:
                break
            try:
                cred = self._decode_token(cred)
            except Exception as e:
                logger.error(f"[ROTATE] Token decode failed for {cred.name}: {e}")
                last_error = e
                self._rotate(cred, "token_decode", "token decode failed")
                continue

            retry = 0
            while True:
                self._bump("total_requests")
                try:
                    result = request_fn(cred)
                except Exception as e:
                    err = last_error = e
                    decision = classify_error(e, self.rules)
                    M_CALLS.labels(cred.credential_id, decision.kind.value).inc()
                    self._bump("failed")
                else:
                    self.pool.record_usage(cred.credential_id)
                    M_CALLS.labels(cred.credential_id, "success").inc()
                    self._bump("successful")
                    return result

                if decision.kind is DecisionKind.RATE_LIMITED:
                    self._rotate(cred, "rate_limit", str(err))
                    break
                if decision.is_permanent and decision.credential_fault and cred.is_backup:
                    self._rotate(cred, "auth", str(err))
                    break
                if decision.is_transient and idempotent and retry < decision.retry_budget:
                    delay = calculate_backoff_delay(retry, self.retry_config)
                    retry += 1
                    logger.warning(
                        f"[ROTATE] {operation} transient failure on {cred.name} "
                        f"(retry {retry}/{decision.retry_budget} in {delay:.2f}s): {err}"
                    )
                    self.sleep(delay)
                    continue

                request_level = isinstance(err, (TransportError, requests.RequestException))
                logger.log(
                    logging.INFO if decision.is_ambiguous else logging.WARNING,
                    f"[ROTATE] {operation} failed on {cred.name} ({decision.kind.value}: {decision.reason}) on attempt {attempt + 1}/{attempts_allowed}: {err}",
                )
                raise error_class_for(decision)(
                    f"{operation} failed: {decision.reason}: {err}",
                    decision,
                    request_level=request_level,
                    credential_id=cred.credential_id,
                ) from err

        summary = self.pool.summary()
        wait_sec = self.pool.seconds_until_reset()
        msg = (
            f"All credentials exhausted for {operation} "
            f"({summary['exhausted']}/{summary['total_credentials']} exhausted, "
            f"reset in {int(wait_sec // 60)} min)"
        )
        logger.error(f"[ROTATE] {msg}")
        notify(msg, "error", "alerts")
        raise AllCredentialsExhaustedError(msg, summary, wait_sec) from last_error

    # ------------- Convenience -------------
    def submit_group(self, operations: Sequence[Any], *, user_access_token: Optional[str] = None) -> List[Optional[Dict[str, Any]]]:
        def send(cred: Credential) -> List[Optional[Dict[str, Any]]]:
            results = self.transport.submit_group(cred, operations)
            self._check_operation_limits(cred, results)
            return results

        return self.call(
            send,
            operation=f"submit_group[{len(operations)}]",
            idempotent=False,
            user_access_token=user_access_token,
        )

    def read_children(self, parent_id: str, *, user_access_token: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.call(
            lambda cred: self.transport.read_children(cred, parent_id),
            operation=f"read_children({parent_id})",
            idempotent=True,
            user_access_token=user_access_token,
        )

    def read_grandchildren(self, parent_id: str, *, user_access_token: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.call(
            lambda cred: self.transport.read_grandchildren(cred, parent_id),
            operation=f"read_grandchildren({parent_id})",
            idempotent=True,
            user_access_token=user_access_token,
        )

    def delete(self, object_id: str, *, user_access_token: Optional[str] = None) -> bool:
        """Delete ``object_id``. Returns False when it was already gone."""
        try:
            self.call(
                lambda cred: self.transport.delete(cred, object_id),
                operation=f"delete({object_id})",
                idempotent=True,
                user_access_token=user_access_token,
            )
        except PermanentError as e:
            if e.decision.rule != "not_found":
                raise
            logger.info(f"[ROTATE] delete({object_id}): already gone")
            return False
        return True
