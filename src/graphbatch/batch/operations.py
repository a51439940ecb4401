from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote

PARENT_TAG_PREFIX = "create-parent"
REFERENCE_PATTERN = re.compile(r"\{result=([^:}]+):[^}]*\}")

# Characters encodeURIComponent leaves alone; the Graph batch endpoint
# URL-decodes each body once before resolving references.
_SAFE = "-_.!~*'()"


def parent_tag(index: int) -> str:
    return f"{PARENT_TAG_PREFIX}-{index}"


def result_ref(name: str, path: str = "$.id") -> str:
    return "{result=%s:%s}" % (name, path)


def _encode_value(value: Any) -> str:
    if isinstance(value, (dict, list)):
        value = json.dumps(value, separators=(",", ":"))
    elif isinstance(value, bool):
        value = "true" if value else "false"
    return quote(str(value), safe=_SAFE)


def encode_body(body: Mapping[str, Any]) -> str:
    return "&".join(f"{k}={_encode_value(v)}" for k, v in body.items() if v is not None)


@dataclass(frozen=True)
class Operation:
    method: str
    relative_url: str
    body: Dict[str, Any] = field(default_factory=dict)
    name: Optional[str] = None

    @property
    def references(self) -> List[str]:
        refs: List[str] = []
        for value in self.body.values():
            if isinstance(value, str):
                refs.extend(REFERENCE_PATTERN.findall(value))
        return refs

    def to_wire(self) -> Dict[str, Any]:
        wire: Dict[str, Any] = {"method": self.method, "relative_url": self.relative_url}
        if self.body:
            wire["body"] = encode_body(self.body)
        if self.name:
            wire["name"] = self.name
        return wire


@dataclass(frozen=True)
class PairSpec:
    """One {parent, child} pair to create. ``index`` is the pair's position in the run."""

    index: int
    copy_number: int
    parent_body: Dict[str, Any]
    child_body: Dict[str, Any]
