from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

import requests
from facebook_business.exceptions import FacebookRequestError

logger = logging.getLogger(__name__)


# -----------------------
# Transport-level errors
# -----------------------
class GraphAPIError(RuntimeError):
    """Application-level error envelope returned by the Graph API."""

    def __init__(
        self,
        message: str,
        *,
        http_status: Optional[int] = None,
        error: Optional[Dict[str, Any]] = None,
        endpoint: str = "",
    ) -> None:
        super().__init__(message)
        self.http_status = http_status
        self.error: Dict[str, Any] = dict(error or {})
        self.endpoint = endpoint

    @property
    def message(self) -> str:
        fallback = self.args[0] if self.args else ""
        return str(self.error.get("message") or fallback)

    @property
    def code(self) -> Optional[int]:
        return _as_int(self.error.get("code"))

    @property
    def subcode(self) -> Optional[int]:
        return _as_int(self.error.get("error_subcode"))

    @property
    def is_transient(self) -> bool:
        return bool(self.error.get("is_transient"))

    @classmethod
    def from_payload(cls, http_status: int, payload: Any, endpoint: str = "") -> "GraphAPIError":
        err = payload.get("error") if isinstance(payload, dict) else None
        if not isinstance(err, dict):
            err = {"message": str(payload)[:500]}
        return cls(
            f"Graph {endpoint} {http_status}: {err.get('message', '')}",
            http_status=http_status,
            error=err,
            endpoint=endpoint,
        )


class TransportError(GraphAPIError):
    """Request-level failure: no per-operation results are available."""


# -----------------------
# Classified errors
# -----------------------
class DecisionKind(Enum):
    PERMANENT = "permanent"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    AMBIGUOUS_TRANSIENT = "ambiguous_transient"


@dataclass(frozen=True)
class RetryDecision:
    kind: DecisionKind
    reason: str
    retry_budget: int = 0
    credential_fault: bool = False
    rule: str = ""

    @property
    def is_permanent(self) -> bool:
        return self.kind is DecisionKind.PERMANENT

    @property
    def is_rate_limited(self) -> bool:
        return self.kind is DecisionKind.RATE_LIMITED

    @property
    def is_transient(self) -> bool:
        return self.kind is DecisionKind.TRANSIENT

    @property
    def is_ambiguous(self) -> bool:
        return self.kind is DecisionKind.AMBIGUOUS_TRANSIENT


class ClassifiedError(RuntimeError):
    def __init__(
        self,
        message: str,
        decision: RetryDecision,
        *,
        request_level: bool = False,
        credential_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.decision = decision
        self.request_level = request_level
        self.credential_id = credential_id

    @property
    def code(self) -> Optional[int]:
        cause = self.__cause__
        return getattr(cause, "code", None) if isinstance(cause, GraphAPIError) else None


class PermanentError(ClassifiedError):
    pass


class TransientError(ClassifiedError):
    pass


class AmbiguousTransientError(ClassifiedError):
    """The remote side may have committed the write. Never retried, only verified."""


class AllCredentialsExhaustedError(RuntimeError):
    def __init__(self, message: str, summary: Optional[Dict[str, Any]] = None, seconds_until_reset: float = 0.0) -> None:
        super().__init__(message)
        self.summary = dict(summary or {})
        self.seconds_until_reset = seconds_until_reset


class CredentialConfigError(ValueError):
    def __init__(self, problems: Sequence[str]) -> None:
        self.problems = list(problems)
        super().__init__("Invalid credential configuration: " + "; ".join(self.problems))


class SettingsError(ValueError):
    def __init__(self, problems: Sequence[str]) -> None:
        self.problems = list(problems)
        super().__init__("Invalid settings: " + "; ".join(self.problems))


class TokenDecodeError(RuntimeError):
    """Raised by token decoders when a stored credential token cannot be decrypted."""


_ERROR_CLASSES = {
    DecisionKind.PERMANENT: PermanentError,
    DecisionKind.TRANSIENT: TransientError,
    DecisionKind.AMBIGUOUS_TRANSIENT: AmbiguousTransientError,
    DecisionKind.RATE_LIMITED: TransientError,
}


def error_class_for(decision: RetryDecision) -> type:
    return _ERROR_CLASSES[decision.kind]


# -----------------------
# Signal extraction
# -----------------------
@dataclass(frozen=True)
class ErrorSignal:
    message: str = ""
    code: Optional[int] = None
    subcode: Optional[int] = None
    http_status: Optional[int] = None
    is_transient: bool = False
    network: bool = False

    @property
    def text(self) -> str:
        return self.message.lower()

    def has(self, *phrases: str) -> bool:
        text = self.text
        return any(p in text for p in phrases)


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _maybe_call(v: Any) -> Any:
    return v() if callable(v) else v


def _signal_from_dict(err: Dict[str, Any], http_status: Optional[int] = None) -> ErrorSignal:
    inner = err.get("error") if isinstance(err.get("error"), dict) else err
    return ErrorSignal(
        message=str(inner.get("message") or inner.get("error_user_msg") or ""),
        code=_as_int(inner.get("code")),
        subcode=_as_int(inner.get("error_subcode")),
        http_status=_as_int(http_status if http_status is not None else err.get("http_status")),
        is_transient=bool(inner.get("is_transient")),
    )


def extract_signal(error: Any) -> ErrorSignal:
    """Normalise SDK, requests, package and dict errors onto one shape."""
    if isinstance(error, ErrorSignal):
        return error
    if isinstance(error, TransportError):
        return ErrorSignal(
            message=str(error),
            code=error.code,
            subcode=error.subcode,
            http_status=error.http_status,
            is_transient=error.is_transient,
            network=error.http_status is None,
        )
    if isinstance(error, GraphAPIError):
        sig = _signal_from_dict(error.error, error.http_status)
        return ErrorSignal(
            message=sig.message or str(error),
            code=sig.code,
            subcode=sig.subcode,
            http_status=sig.http_status,
            is_transient=sig.is_transient,
        )
    if isinstance(error, FacebookRequestError):
        body = _maybe_call(getattr(error, "body", None))
        err = (body or {}).get("error", {}) if isinstance(body, dict) else {}
        return ErrorSignal(
            message=str(_maybe_call(error.api_error_message) or error),
            code=_as_int(_maybe_call(error.api_error_code)),
            subcode=_as_int(_maybe_call(error.api_error_subcode)),
            http_status=_as_int(_maybe_call(error.http_status)),
            is_transient=bool(_maybe_call(error.api_transient_error) or err.get("is_transient")),
        )
    if isinstance(error, (requests.Timeout, requests.ConnectionError)):
        return ErrorSignal(message=f"{type(error).__name__}: {error}", network=True)
    if isinstance(error, dict):
        return _signal_from_dict(error)
    return ErrorSignal(message=str(error))


# -----------------------
# Decision table
# -----------------------
RATE_LIMIT_CODES: Tuple[int, ...] = (4, 17, 32, 613) + tuple(range(80000, 80015))
RATE_LIMIT_SUBCODES: Tuple[int, ...] = (80004,)
AUTH_CODES: Tuple[int, ...] = (190,)
PERMISSION_CODES: Tuple[int, ...] = (10,) + tuple(range(200, 300))
INVALID_PARAMETER_CODES: Tuple[int, ...] = (100,)
NOT_FOUND_CODES: Tuple[int, ...] = (803,)
SERVER_ERROR_CODES: Tuple[int, ...] = (1, 2, 368)

ACCOUNT_DISABLED_PHRASES = ("account is disabled", "account has been disabled", "account disabled",
                            "account is suspended", "account has been suspended", "account is closed",
                            "account has been closed")
AUTH_PHRASES = ("invalid token", "token is invalid", "access token has expired",
                "error validating access token", "invalid oauth", "session has expired")
PERMISSION_PHRASES = ("permission", "not authorized", "unauthorized", "ownership", "not owned by",
                      "does not own")
INVALID_PARAMETER_PHRASES = ("invalid parameter", "invalid value")
NOT_FOUND_PHRASES = ("not found", "does not exist", "unsupported get request", "cannot be loaded")
RATE_LIMIT_PHRASES = ("rate limit", "too many requests", "throttle", "request limit reached",
                      "too many calls")
NETWORK_PHRASES = ("network", "timeout", "timed out", "econnreset", "econnrefused", "etimedout",
                   "socket hang up", "connection reset", "connection aborted", "connection refused")
SERVER_ERROR_PHRASES = ("internal server error", "service unavailable", "bad gateway",
                        "gateway timeout", "unexpected error", "temporarily unavailable")


@dataclass(frozen=True)
class ErrorRule:
    name: str
    predicate: Callable[[ErrorSignal], bool]
    kind: DecisionKind
    reason: str
    retry_budget: int = 0
    credential_fault: bool = False

    def decide(self) -> RetryDecision:
        return RetryDecision(
            kind=self.kind,
            reason=self.reason,
            retry_budget=self.retry_budget,
            credential_fault=self.credential_fault,
            rule=self.name,
        )


@dataclass
class RetryConfig:
    max_retries: int = 5
    initial_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: float = 0.1


DEFAULT_RETRY_CONFIG = RetryConfig()


def _is_5xx(sig: ErrorSignal) -> bool:
    return sig.http_status is not None and 500 <= sig.http_status < 600


DEFAULT_RULES: Tuple[ErrorRule, ...] = (
    ErrorRule(
        "account_disabled",
        lambda s: s.has(*ACCOUNT_DISABLED_PHRASES),
        DecisionKind.PERMANENT,
        "ad account is disabled",
    ),
    ErrorRule(
        "invalid_token",
        lambda s: s.code in AUTH_CODES or s.has(*AUTH_PHRASES),
        DecisionKind.PERMANENT,
        "access token is invalid or expired",
        credential_fault=True,
    ),
    ErrorRule(
        "permission",
        lambda s: s.code in PERMISSION_CODES or s.has(*PERMISSION_PHRASES),
        DecisionKind.PERMANENT,
        "missing permission or ownership",
    ),
    ErrorRule(
        "not_found",
        lambda s: s.code in NOT_FOUND_CODES or s.has(*NOT_FOUND_PHRASES),
        DecisionKind.PERMANENT,
        "entity not found",
    ),
    ErrorRule(
        "invalid_parameter",
        lambda s: s.code in INVALID_PARAMETER_CODES or s.has(*INVALID_PARAMETER_PHRASES),
        DecisionKind.PERMANENT,
        "invalid parameter",
    ),
    ErrorRule(
        "rate_limit",
        lambda s: (
            s.code in RATE_LIMIT_CODES
            or s.subcode in RATE_LIMIT_SUBCODES
            or s.http_status == 429
            or s.has(*RATE_LIMIT_PHRASES)
        ),
        DecisionKind.RATE_LIMITED,
        "rate limit reached",
    ),
    ErrorRule(
        "network",
        lambda s: s.network or (s.http_status is None and s.has(*NETWORK_PHRASES)),
        DecisionKind.TRANSIENT,
        "network or timeout failure",
        retry_budget=DEFAULT_RETRY_CONFIG.max_retries,
    ),
    ErrorRule(
        "platform_transient",
        lambda s: _is_5xx(s) and s.is_transient,
        DecisionKind.AMBIGUOUS_TRANSIENT,
        "platform reported a transient server error; the write may have been applied",
    ),
    ErrorRule(
        "server_error",
        lambda s: _is_5xx(s) or s.code in SERVER_ERROR_CODES or s.has(*SERVER_ERROR_PHRASES),
        DecisionKind.TRANSIENT,
        "server error",
        retry_budget=DEFAULT_RETRY_CONFIG.max_retries,
    ),
)

UNCLASSIFIED = RetryDecision(DecisionKind.TRANSIENT, "unclassified error", retry_budget=1, rule="unclassified")


def classify_error(error: Any, rules: Sequence[ErrorRule] = DEFAULT_RULES) -> RetryDecision:
    """Return the decision of the first rule matching ``error``.

    Pure: the same error always yields the same decision. Anything no rule
    matches is treated as transient with a single retry.
    """
    sig = extract_signal(error)
    for rule in rules:
        if rule.predicate(sig):
            return rule.decide()
    return UNCLASSIFIED


def matching_rule(error: Any, rules: Sequence[ErrorRule] = DEFAULT_RULES) -> Optional[str]:
    sig = extract_signal(error)
    for rule in rules:
        if rule.predicate(sig):
            return rule.name
    return None


def calculate_backoff_delay(
    attempt: int,
    config: Optional[RetryConfig] = None,
    rand: Callable[[], float] = random.random,
) -> float:
    """Exponential delay for ``attempt`` (0-based), capped, with symmetric jitter."""
    config = config or DEFAULT_RETRY_CONFIG
    delay = config.initial_delay * (config.exponential_base ** max(0, attempt))
    delay = min(delay, config.max_delay)
    if config.jitter:
        delay = delay * (1.0 + config.jitter * (2.0 * rand() - 1.0))
    return max(0.0, delay)


__all__ = [
    "GraphAPIError",
    "TransportError",
    "DecisionKind",
    "RetryDecision",
    "ClassifiedError",
    "PermanentError",
    "TransientError",
    "AmbiguousTransientError",
    "AllCredentialsExhaustedError",
    "CredentialConfigError",
    "SettingsError",
    "TokenDecodeError",
    "ErrorSignal",
    "ErrorRule",
    "RetryConfig",
    "DEFAULT_RULES",
    "UNCLASSIFIED",
    "classify_error",
    "matching_rule",
    "extract_signal",
    "error_class_for",
    "calculate_backoff_delay",
]
