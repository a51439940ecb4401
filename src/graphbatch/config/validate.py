import logging
import os
from typing import Any, Dict, Iterable, List

import jsonschema
import yaml

from ..infrastructure.error_handling import SettingsError

logger = logging.getLogger(__name__)

SCHEMA_PATH = os.path.join(os.path.dirname(__file__), "schema.settings.yaml")


def load_schema(path: str = SCHEMA_PATH) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _find_duplicate_ids(entries: Iterable[Dict[str, Any]]) -> Iterable[str]:
    seen = set()
    for entry in entries:
        cid = entry.get("id")
        if cid in seen:
            yield str(cid)
        seen.add(cid)


def validate_settings(cfg: Dict[str, Any]) -> None:
    """
    Validate merged settings before any credential is built.

    - Checks the payload against the bundled JSON schema.
    - Rejects duplicate credential ids.
    - Requires exactly one non-backup (primary) credential when any are listed.

    Raises SettingsError carrying every problem found.
    """
    if not isinstance(cfg, dict):
        raise SettingsError(["Settings payload must be a mapping."])

    validator = jsonschema.Draft7Validator(load_schema())
    problems: List[str] = []
    for err in sorted(validator.iter_errors(cfg), key=lambda e: list(e.path)):
        where = "/".join(str(p) for p in err.path) or "<root>"
        problems.append(f"{where}: {err.message}")

    credentials = cfg.get("credentials") or []
    if isinstance(credentials, list) and all(isinstance(c, dict) for c in credentials):
        duplicates = sorted(set(_find_duplicate_ids(credentials)))
        if duplicates:
            problems.append(f"credentials: duplicate ids {', '.join(duplicates)}")
        primaries = [c for c in credentials if not c.get("is_backup", False)]
        if credentials and len(primaries) != 1:
            problems.append(f"credentials: expected exactly one primary credential, found {len(primaries)}")

    if problems:
        for p in problems:
            logger.error(f"Invalid settings: {p}")
        raise SettingsError(problems)
