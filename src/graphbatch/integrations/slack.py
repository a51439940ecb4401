from __future__ import annotations

import logging
import os
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Union

import requests
from prometheus_client import Counter

from ..utils import getenv_b, getenv_f, getenv_i, truncate

logger = logging.getLogger(__name__)

SLACK_TIMEOUT = getenv_f("SLACK_TIMEOUT", 10.0)
SLACK_RETRY_MAX = getenv_i("SLACK_RETRY_MAX", 3)
SLACK_BACKOFF_BASE = getenv_f("SLACK_BACKOFF_BASE", 1.0)
SLACK_BACKOFF_CAP = getenv_f("SLACK_BACKOFF_CAP", 8.0)
SLACK_TEXT_LIMIT = 3000

M_SENT = Counter("graphbatch_slack_messages_total", "Slack notifications by outcome", ["topic", "outcome"])

EMOJI = {
    "info": "ℹ️",
    "warn": "⏸️",
    "error": "🛑",
}


def _env_webhooks() -> Dict[str, str]:
    main_webhook = os.getenv("SLACK_WEBHOOK_URL", "") or ""
    return {
        "default": main_webhook,
        "alerts": os.getenv("SLACK_WEBHOOK_ALERTS", "") or main_webhook,
    }


def slack_enabled() -> bool:
    return any(_env_webhooks().values()) and getenv_b("SLACK_ENABLED", True)


@dataclass
class SlackMessage:
    text: str = ""
    topic: Union[Literal["default", "alerts"], str] = "default"
    severity: Literal["info", "warn", "error"] = "info"
    meta: Dict[str, Any] = field(default_factory=dict)

    def sanitized_text(self) -> str:
        s = re.sub(r"[\x00-\x08\x0b-\x1f\x7f]", "", self.text or "")
        s = re.sub(r"[ \t]+", " ", s)
        return truncate(s.strip(), SLACK_TEXT_LIMIT)

    def route_webhook(self) -> str:
        if isinstance(self.meta.get("webhook"), str) and self.meta["webhook"]:
            return str(self.meta["webhook"])
        w = _env_webhooks()
        if self.topic == "alerts" and w["alerts"]:
            return w["alerts"]
        return w["default"]

    def payload(self) -> Dict[str, Any]:
        return {"text": f"{EMOJI.get(self.severity, '')} {self.sanitized_text()}".strip()}


def _post_with_retries(webhook: str, payload: Dict[str, Any], topic: str) -> bool:
    for attempt in range(SLACK_RETRY_MAX + 1):
        try:
            r = requests.post(webhook, json=payload, timeout=SLACK_TIMEOUT)
        except requests.RequestException as e:
            logger.warning(f"[SLACK] post failed ({topic}): {e}")
        else:
            if r.status_code < 300:
                return True
            if r.status_code != 429 and r.status_code < 500:
                logger.warning(f"[SLACK] rejected ({topic}) {r.status_code}: {truncate(r.text, 200)}")
                return False
            retry_after = r.headers.get("Retry-After")
            if retry_after and retry_after.isdigit() and attempt < SLACK_RETRY_MAX:
                time.sleep(min(SLACK_BACKOFF_CAP, float(retry_after)))
                continue
        if attempt < SLACK_RETRY_MAX:
            time.sleep(min(SLACK_BACKOFF_CAP, SLACK_BACKOFF_BASE * (2 ** attempt)))
    return False


def notify(
    text: str,
    severity: Literal["info", "warn", "error"] = "info",
    topic: Union[str, Literal["default", "alerts"]] = "default",
) -> None:
    """Post ``text`` to the webhook routed by ``topic``. Never raises."""
    msg = SlackMessage(text=text, severity=severity, topic=topic)
    if not slack_enabled():
        logger.info(f"[SLACK DISABLED {severity}/{topic}] {msg.sanitized_text()}")
        return
    webhook = msg.route_webhook()
    if not webhook:
        logger.info(f"[SLACK MOCK {severity}/{topic}] {msg.sanitized_text()} (no webhook)")
        return
    ok = _post_with_retries(webhook, msg.payload(), str(topic))
    M_SENT.labels(str(topic), "sent" if ok else "failed").inc()
    if not ok:
        logger.warning(f"[SLACK FAILED {severity}/{topic}] {msg.sanitized_text()}")
