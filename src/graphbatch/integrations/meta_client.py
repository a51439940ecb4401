# meta_client.py
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Sequence

import requests

from ..config import (
    BATCH_TIMEOUT_SEC,
    GRAPH_BASE_URL,
    META_API_VERSION,
    READ_PAGE_LIMIT,
    REQUEST_TIMEOUT_SEC,
)
from ..infrastructure.error_handling import GraphAPIError, TransportError
from ..utils import truncate

logger = logging.getLogger(__name__)


def _graph_log(level: int, message: str) -> None:
    logger.log(level, f"[GRAPH] {message}")


def _wire(op: Any) -> Dict[str, Any]:
    return op.to_wire() if hasattr(op, "to_wire") else dict(op)


class GraphTransport:
    """Thin Graph API client: one method per remote round trip.

    Errors are raised, never retried here. ``TransportError`` means no
    response was usable. ``GraphAPIError`` carries the platform's error envelope.
    Retrying and credential choice belong to the rotating caller.
    """

    def __init__(
        self,
        api_version: Optional[str] = None,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = REQUEST_TIMEOUT_SEC,
        batch_timeout: float = BATCH_TIMEOUT_SEC,
        base_url: str = GRAPH_BASE_URL,
    ) -> None:
        self.api_version = api_version or META_API_VERSION
        self.session = session or requests.Session()
        self.timeout = timeout
        self.batch_timeout = batch_timeout
        self.base_url = base_url.rstrip("/")

    def _graph_url(self, path: str = "") -> str:
        path = (path or "").lstrip("/")
        return f"{self.base_url}/{self.api_version}/{path}" if path else f"{self.base_url}/{self.api_version}/"

    def _send(self, method: str, path: str, *, timeout: float, **kwargs: Any) -> requests.Response:
        url = self._graph_url(path)
        try:
            return self.session.request(method, url, timeout=timeout, **kwargs)
        except requests.RequestException as e:
            raise TransportError(f"Graph {method} {path or '/'} failed: {type(e).__name__}: {e}", endpoint=path) from e

    @staticmethod
    def _decode(r: requests.Response, endpoint: str) -> Any:
        if r.status_code >= 400:
            try:
                payload = r.json()
            except ValueError:
                raise TransportError(
                    f"Graph {endpoint} {r.status_code}: {truncate(r.text, 300)}",
                    http_status=r.status_code,
                    error={"message": truncate(r.text, 300)},
                    endpoint=endpoint,
                )
            raise GraphAPIError.from_payload(r.status_code, payload, endpoint)
        try:
            return r.json()
        except ValueError:
            raise TransportError(
                f"Graph {endpoint}: unparsable response body",
                http_status=r.status_code,
                endpoint=endpoint,
            )

    # ------------- Batch -------------
    def submit_group(self, credential: Any, operations: Sequence[Any]) -> List[Optional[Dict[str, Any]]]:
        """Submit one batch request. Returns one raw result per operation, in order."""
        batch = [_wire(op) for op in operations]
        _graph_log(logging.INFO, f"POST batch of {len(batch)} ops via {credential.name}")
        r = self._send(
            "POST",
            "",
            timeout=self.batch_timeout,
            data={"batch": json.dumps(batch), "access_token": credential.access_token},
        )
        results = self._decode(r, "batch")
        if not isinstance(results, list):
            raise TransportError(
                f"Graph batch: expected a list of results, got {type(results).__name__}",
                http_status=r.status_code,
                endpoint="batch",
            )
        if len(results) != len(batch):
            _graph_log(logging.WARNING, f"batch returned {len(results)} results for {len(batch)} ops")
            results = list(results[: len(batch)]) + [None] * max(0, len(batch) - len(results))
        return results

    # ------------- Reads -------------
    def _get_paged(self, credential: Any, path: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        qp = dict(params)
        qp["access_token"] = credential.access_token
        r = self._send("GET", path, timeout=self.timeout, params=qp)
        page = self._decode(r, path)
        rows: List[Dict[str, Any]] = list(page.get("data") or [])
        next_url = (page.get("paging") or {}).get("next")
        while next_url:
            try:
                r = self.session.get(next_url, timeout=self.timeout)
            except requests.RequestException as e:
                raise TransportError(f"Graph GET {path} (next page) failed: {e}", endpoint=path) from e
            page = self._decode(r, path)
            rows.extend(page.get("data") or [])
            next_url = (page.get("paging") or {}).get("next")
        return rows

    def read_children(self, credential: Any, parent_id: str) -> List[Dict[str, Any]]:
        rows = self._get_paged(
            credential,
            f"{parent_id}/adsets",
            {"fields": "id,name", "limit": READ_PAGE_LIMIT},
        )
        return [{"id": str(r["id"]), "name": r.get("name") or ""} for r in rows if r.get("id")]

    def read_grandchildren(self, credential: Any, parent_id: str) -> List[Dict[str, Any]]:
        rows = self._get_paged(
            credential,
            f"{parent_id}/ads",
            {"fields": "id,adset_id", "limit": READ_PAGE_LIMIT},
        )
        return [
            {"id": str(r["id"]), "parent_id": str(r.get("adset_id") or "")}
            for r in rows if r.get("id")
        ]

    # ------------- Writes -------------
    def delete(self, credential: Any, object_id: str) -> None:
        r = self._send(
            "DELETE",
            str(object_id),
            timeout=self.timeout,
            params={"access_token": credential.access_token},
        )
        body = self._decode(r, str(object_id))
        if isinstance(body, dict) and body.get("success") is False:
            raise GraphAPIError(f"Graph DELETE {object_id}: success=false", http_status=r.status_code, endpoint=str(object_id))
        _graph_log(logging.INFO, f"deleted {object_id} via {credential.name}")

