"""JSON export and import of sealed scan results."""

import json
import logging
from pathlib import Path
from typing import Any, Dict

from pydantic import ValidationError

from .exceptions import ParseError
from .models import Artifact, ScanResult

logger = logging.getLogger(__name__)

# export key -> Artifact field, where they differ
_ITEM_KEY_ALIASES = {"risk": "risk_level", "hash": "content_hash"}
_DERIVED_RESULT_KEYS = ("total_items", "counts_by_risk")


def item_to_dict(item: Artifact) -> Dict[str, Any]:
    data = item.model_dump(mode="json")
    return {
        "id": data.pop("id"),
        "mechanism_kind": data.pop("mechanism_kind"),
        "name": data.pop("name"),
        "path": data.pop("path"),
        "command": data.pop("command"),
        "risk": data.pop("risk_level"),
        "signing_tier": data.pop("signing_tier"),
        "hash": data.pop("content_hash"),
        "indicators": data.pop("indicators"),
        "metadata": data.pop("metadata"),
        **data,
    }


def result_to_dict(result: ScanResult) -> Dict[str, Any]:
    data = result.model_dump(mode="json", exclude={"items", "errors"})
    return {
        "scan_id": data.pop("scan_id"),
        "start_time": data.pop("start_time"),
        "end_time": data.pop("end_time"),
        "total_items": data.pop("total_items"),
        "counts_by_risk": data.pop("counts_by_risk"),
        "items": [item_to_dict(i) for i in result.items],
        "errors": [e.model_dump(mode="json") for e in result.errors],
        **data,
    }


def export_json(result: ScanResult, indent: int = 2) -> str:
    return json.dumps(result_to_dict(result), indent=indent)


def _item_from_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    return {_ITEM_KEY_ALIASES.get(k, k): v for k, v in data.items()}


def parse_json(text: str) -> ScanResult:
    """Rebuild a ScanResult from export_json output."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseError(f"Not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ParseError("Exported scan must be a JSON object")
    for key in _DERIVED_RESULT_KEYS:
        data.pop(key, None)
    data["items"] = [_item_from_dict(i) for i in data.get("items", [])]
    try:
        return ScanResult.model_validate(data)
    except ValidationError as e:
        raise ParseError(f"Exported scan does not match the result schema: {e}") from e


def write_json(result: ScanResult, path: str) -> Path:
    output = Path(path)
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(export_json(result), encoding="utf-8")
    logger.info(f"Wrote {result.total_items} items to {output}")
    return output


def read_json(path: str) -> ScanResult:
    return parse_json(Path(path).read_text(encoding="utf-8"))
