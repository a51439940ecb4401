from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qsl

import pytest

from graphbatch.batch import BatchBuilder, BatchOrchestrator
from graphbatch.config import EngineSettings
from graphbatch.infrastructure.credential_pool import Credential, CredentialPool
from graphbatch.infrastructure.error_handling import GraphAPIError, TransportError
from graphbatch.integrations.rotation import RotatingGraphClient
from graphbatch.utils import FixedClock

CAMPAIGN_ID = "cmp_1"
USER_TOKEN = "user-token"
REF = re.compile(r"^\{result=([^:}]+):\$\.id\}$")


def graph_error(code: int, message: str, status: int = 400, is_transient: bool = False, subcode: Optional[int] = None) -> GraphAPIError:
    err = {"message": message, "code": code, "is_transient": is_transient}
    if subcode is not None:
        err["error_subcode"] = subcode
    return GraphAPIError(f"Graph {status}: {message}", http_status=status, error=err)


def op_error(code: int, message: str, status: int = 400, is_transient: bool = False) -> Dict[str, Any]:
    body = {"error": {"message": message, "code": code, "is_transient": is_transient}}
    return {"code": status, "body": json.dumps(body)}


RATE_LIMITED = lambda: graph_error(4, "Application request limit reached")
AMBIGUOUS = lambda: graph_error(2, "Service temporarily unavailable", status=503, is_transient=True)
NETWORK = lambda: TransportError("Graph POST / failed: ConnectionError: socket hang up")


class FakeGraph:
    """In-memory Graph API holding one campaign's ad sets and ads.

    Batch requests resolve ``{result=name:$.id}`` references against earlier
    operations of the same request only. Failures are scripted per operation
    name, per request, per credential, per delete and per read.
    """

    def __init__(self) -> None:
        self.objects: Dict[str, Dict[str, Any]] = {}
        self._next_id = 1000
        self.batches: List[List[Dict[str, Any]]] = []
        self.credentials_used: List[str] = []
        self.deleted: List[str] = []
        self._op_plans: List[Dict[str, Any]] = []
        self._request_plans: List[Dict[str, Any]] = []
        self._rate_limits: Dict[str, int] = {}
        self._delete_failures: Dict[str, int] = {}
        self._read_failures: List[Exception] = []

    # ------------- scripting -------------
    def fail_op(self, name: str, result: Optional[Dict[str, Any]] = None, times: int = 1, commit: bool = False) -> None:
        """Answer the op whose body ``name`` equals ``name`` with ``result`` (None = unreported)."""
        self._op_plans.append({"name": name, "result": result, "times": times, "commit": commit})

    def fail_request(self, exc_factory: Callable[[], Exception], times: int = 1, commit: bool = False,
                     when: Optional[Callable[[List[Dict[str, Any]]], bool]] = None) -> None:
        self._request_plans.append({"exc": exc_factory, "times": times, "commit": commit, "when": when})

    def rate_limit(self, credential_id: str, times: int = 10 ** 6) -> None:
        self._rate_limits[credential_id] = times

    def fail_delete(self, object_id: str, times: int = 1) -> None:
        self._delete_failures[object_id] = times

    def fail_reads(self, exc: Exception, times: int = 1) -> None:
        self._read_failures.extend([exc] * times)

    # ------------- state helpers -------------
    def new_id(self) -> str:
        self._next_id += 1
        return str(self._next_id)

    def add_adset(self, name: str, campaign_id: str = CAMPAIGN_ID) -> str:
        oid = self.new_id()
        self.objects[oid] = {"id": oid, "type": "adset", "name": name, "campaign_id": campaign_id}
        return oid

    def add_ad(self, adset_id: str, name: str = "Ad") -> str:
        oid = self.new_id()
        campaign_id = self.objects[adset_id]["campaign_id"]
        self.objects[oid] = {"id": oid, "type": "ad", "name": name, "adset_id": adset_id, "campaign_id": campaign_id}
        return oid

    def adsets(self, campaign_id: str = CAMPAIGN_ID) -> List[Dict[str, Any]]:
        return [o for o in self.objects.values() if o["type"] == "adset" and o["campaign_id"] == campaign_id]

    def ads(self, campaign_id: str = CAMPAIGN_ID) -> List[Dict[str, Any]]:
        return [o for o in self.objects.values() if o["type"] == "ad" and o["campaign_id"] == campaign_id]

    def ads_of(self, adset_id: str) -> List[Dict[str, Any]]:
        return [o for o in self.objects.values() if o["type"] == "ad" and o.get("adset_id") == adset_id]

    def orphan_adsets(self) -> List[Dict[str, Any]]:
        return [a for a in self.adsets() if not self.ads_of(a["id"])]

    # ------------- transport interface -------------
    def _check_credential(self, credential: Any) -> None:
        self.credentials_used.append(credential.credential_id)
        left = self._rate_limits.get(credential.credential_id, 0)
        if left > 0:
            self._rate_limits[credential.credential_id] = left - 1
            raise RATE_LIMITED()

    def _take_request_plan(self, ops: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        for plan in self._request_plans:
            if plan["times"] > 0 and (plan["when"] is None or plan["when"](ops)):
                plan["times"] -= 1
                return plan
        return None

    def _take_op_plan(self, body: Dict[str, str]) -> Optional[Dict[str, Any]]:
        for plan in self._op_plans:
            if plan["times"] > 0 and body.get("name") == plan["name"]:
                plan["times"] -= 1
                return plan
        return None

    def submit_group(self, credential: Any, operations: List[Any]) -> List[Optional[Dict[str, Any]]]:
        self._check_credential(credential)
        wire = [op.to_wire() for op in operations]
        self.batches.append(wire)
        plan = self._take_request_plan(wire)
        if plan and not plan["commit"]:
            raise plan["exc"]()
        results = self._apply(wire)
        if plan:
            raise plan["exc"]()
        return results

    def _apply(self, wire: List[Dict[str, Any]]) -> List[Optional[Dict[str, Any]]]:
        named: Dict[str, str] = {}
        results: List[Optional[Dict[str, Any]]] = []
        for op in wire:
            body = dict(parse_qsl(op.get("body", ""), keep_blank_values=True))
            plan = self._take_op_plan(body)
            if plan and not plan["commit"]:
                results.append(plan["result"])
                continue
            result = self._create(op, body, named)
            results.append(plan["result"] if plan else result)
        return results

    def _create(self, op: Dict[str, Any], body: Dict[str, str], named: Dict[str, str]) -> Dict[str, Any]:
        for key, value in list(body.items()):
            m = REF.match(value)
            if m:
                if m.group(1) not in named:
                    return op_error(100, f"Cannot resolve reference {m.group(1)}")
                body[key] = named[m.group(1)]
        if op["relative_url"].endswith("adsets"):
            oid = self.add_adset(body.get("name", ""), body.get("campaign_id", CAMPAIGN_ID))
        else:
            if body.get("adset_id") not in self.objects:
                return op_error(100, "Ad set does not exist")
            oid = self.add_ad(body["adset_id"], body.get("name", ""))
        if op.get("name"):
            named[op["name"]] = oid
        return {"code": 200, "body": json.dumps({"id": oid})}

    def _check_read(self, credential: Any) -> None:
        self._check_credential(credential)
        if self._read_failures:
            raise self._read_failures.pop(0)

    def read_children(self, credential: Any, parent_id: str) -> List[Dict[str, Any]]:
        self._check_read(credential)
        return [{"id": a["id"], "name": a["name"]} for a in self.adsets(parent_id)]

    def read_grandchildren(self, credential: Any, parent_id: str) -> List[Dict[str, Any]]:
        self._check_read(credential)
        return [{"id": a["id"], "parent_id": a["adset_id"]} for a in self.ads(parent_id)]

    def delete(self, credential: Any, object_id: str) -> None:
        self._check_credential(credential)
        left = self._delete_failures.get(object_id, 0)
        if left > 0:
            self._delete_failures[object_id] = left - 1
            raise graph_error(100, "Invalid parameter")
        if object_id not in self.objects:
            raise graph_error(100, f"Object with ID '{object_id}' does not exist", subcode=33)
        for ad in self.ads_of(object_id):
            del self.objects[ad["id"]]
        del self.objects[object_id]
        self.deleted.append(object_id)


def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture(autouse=True)
def _quiet_slack(monkeypatch):
    for var in ("SLACK_WEBHOOK_URL", "SLACK_WEBHOOK_ALERTS"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("SLACK_ENABLED", "0")


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def alerts():
    return []


def make_credentials() -> List[Credential]:
    return [
        Credential("main_app", "Main App", priority=1, is_backup=False),
        Credential("backup_1", "Backup 1", priority=2, access_token="tok-1"),
        Credential("backup_2", "Backup 2", priority=3, access_token="tok-2"),
    ]


@pytest.fixture
def pool(clock, alerts):
    return CredentialPool(
        make_credentials(),
        clock=clock,
        notifier=lambda text, severity="info", topic="default": alerts.append((severity, topic, text)),
    )


@pytest.fixture
def graph():
    return FakeGraph()


@pytest.fixture
def client(graph, pool):
    return RotatingGraphClient(graph, pool, sleep=no_sleep)


@pytest.fixture
def builder():
    return BatchBuilder("123")


@pytest.fixture
def make_specs(builder):
    def _make(count: int, start_number: int = 1):
        return builder.build_pair_specs(
            count,
            lambda n: ({"name": f"Adset - Copy {n}", "daily_budget": 1000}, {"name": f"Ad - Copy {n}"}),
            start_number=start_number,
        )
    return _make


@pytest.fixture
def settings():
    return EngineSettings(
        pairs_per_group=2,
        group_delay_sec=0.0,
        orphan_retry_delay_sec=0.0,
        pair_retry_delay_sec=0.0,
        verify_delete_delay_sec=0.0,
    )


@pytest.fixture
def orchestrator(client, builder, settings):
    return BatchOrchestrator(client, builder=builder, settings=settings, sleep=no_sleep)
