# lambdas/relay_logs/record_rules.py
import copy
import json
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from .models import Record, RelayError

DEFAULT_RULES_PATH = Path(__file__).parent / "rules.yml"

# Numbers below this are taken as epoch seconds, above it as epoch milliseconds.
_EPOCH_MS_THRESHOLD = 1e11
_COMPACT_OFFSET = re.compile(r"([+-]\d{2})(\d{2})$")
_WILDCARD = "*"
_MISSING = object()


class RulesError(RelayError):
    """The rules file is missing or malformed."""
    pass


@dataclass(frozen=True)
class RecordRules:
    """
    The lookup tables that decide what happens to each record.
    All field names are dotted paths into the JSON object.
    """
    drop_fields: Tuple[str, ...] = ()
    rename_fields: Dict[str, str] = field(default_factory=dict)
    value_map: Dict[str, Dict[Any, Any]] = field(default_factory=dict)
    stop_rules: Tuple[Dict[str, Any], ...] = ()
    allow_rules: Tuple[Dict[str, Any], ...] = ()
    timestamp_fields: Tuple[str, ...] = ()
    level_fields: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, raw: Optional[dict]) -> "RecordRules":
        raw = raw or {}
        return cls(
            drop_fields=tuple(raw.get("drop_fields") or ()),
            rename_fields=dict(raw.get("rename_fields") or {}),
            value_map={k: dict(v or {}) for k, v in (raw.get("value_map") or {}).items()},
            stop_rules=tuple(raw.get("stop_rules") or ()),
            allow_rules=tuple(raw.get("allow_rules") or ()),
            timestamp_fields=tuple(raw.get("timestamp_fields") or ()),
            level_fields=tuple(raw.get("level_fields") or ()),
        )


def load_record_rules(path: Optional[str] = None) -> RecordRules:
    """
    Loads record rules from a YAML file, falling back to the bundled rules.yml.
    """
    rules_path = Path(path) if path else DEFAULT_RULES_PATH
    try:
        with open(rules_path, 'r', encoding='utf-8') as f:
            raw = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise RulesError(f"Could not load rules file {rules_path}: {e}") from e
    if raw is not None and not isinstance(raw, dict):
        raise RulesError(f"Rules file {rules_path} must contain a mapping, got {type(raw).__name__}.")
    return RecordRules.from_dict(raw)


# Dotted path helpers
def get_path(obj: Dict[str, Any], path: str, default: Any = None) -> Any:
    current: Any = obj
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def pop_path(obj: Dict[str, Any], path: str) -> Any:
    *parents, leaf = path.split(".")
    current: Any = obj
    for part in parents:
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    if not isinstance(current, dict):
        return _MISSING
    return current.pop(leaf, _MISSING)


def set_path(obj: Dict[str, Any], path: str, value: Any) -> None:
    *parents, leaf = path.split(".")
    current = obj
    for part in parents:
        child = current.get(part)
        if not isinstance(child, dict):
            child = {}
            current[part] = child
        current = child
    current[leaf] = value


def _lookup(table: Dict[Any, Any], value: Any) -> Any:
    """Exact-match lookup: key and value must share a type, so 200.0 and True never hit the key 200 or 1."""
    if isinstance(value, (dict, list)):
        return _MISSING
    for key, replacement in table.items():
        if type(key) is type(value) and key == value:
            return replacement
    return _MISSING


def _map_all_values(obj: Any, table: Dict[Any, Any]) -> Any:
    if isinstance(obj, dict):
        return {k: _map_all_values(v, table) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_map_all_values(v, table) for v in obj]
    replacement = _lookup(table, obj)
    return obj if replacement is _MISSING else replacement


def _matches(record: Dict[str, Any], rule: Dict[str, Any]) -> bool:
    return all(get_path(record, path, _MISSING) == expected for path, expected in rule.items())


def parse_timestamp_ms(value: Any) -> Optional[int]:
    """
    Normalizes an ISO-8601 string or a numeric epoch (seconds or milliseconds)
    to milliseconds since the epoch. Returns None when the value is not a timestamp.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        return int(value) if abs(value) >= _EPOCH_MS_THRESHOLD else int(value * 1000)
    if not isinstance(value, str) or not value.strip():
        return None

    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _COMPACT_OFFSET.sub(r"\1:\2", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def format_timestamp_ms(timestamp_ms: int) -> str:
    dt = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class RecordTransformer:
    """
    Applies RecordRules to parsed JSON objects.
    The input object is never modified; every call builds a new Record.
    """

    def __init__(self, rules: RecordRules, default_timestamp_ms: int):
        self.rules = rules
        self.default_timestamp_ms = default_timestamp_ms

    def accepts(self, obj: Dict[str, Any]) -> bool:
        """Stop rules reject; a non-empty allow list must match at least once."""
        if any(_matches(obj, rule) for rule in self.rules.stop_rules):
            return False
        if self.rules.allow_rules:
            return any(_matches(obj, rule) for rule in self.rules.allow_rules)
        return True

    def transform(self, obj: Dict[str, Any]) -> Record:
        fields = copy.deepcopy(obj)

        for old_path, new_path in self.rules.rename_fields.items():
            value = pop_path(fields, old_path)
            if value is not _MISSING:
                set_path(fields, new_path, value)

        # After renames, so a rename can never reintroduce a dropped field
        for path in self.rules.drop_fields:
            pop_path(fields, path)

        for path, table in self.rules.value_map.items():
            if path == _WILDCARD:
                fields = _map_all_values(fields, table)
                continue
            value = get_path(fields, path, _MISSING)
            if value is _MISSING:
                continue
            replacement = _lookup(table, value)
            if replacement is not _MISSING:
                set_path(fields, path, replacement)

        timestamp_ms = self._normalize_timestamp(fields)
        level = self._find_level(fields)

        line = json.dumps(fields, separators=(",", ":"), ensure_ascii=False)
        return Record(
            fields=fields,
            timestamp_ms=timestamp_ms,
            line=line,
            size=len(line.encode("utf-8")),
            level=level,
        )

    def _normalize_timestamp(self, fields: Dict[str, Any]) -> int:
        # Rewrites the first recognized timestamp field in place as ISO-8601 UTC.
        for path in self.rules.timestamp_fields:
            value = get_path(fields, path, _MISSING)
            if value is _MISSING:
                continue
            timestamp_ms = parse_timestamp_ms(value)
            if timestamp_ms is None:
                continue
            try:
                normalized = format_timestamp_ms(timestamp_ms)
            except (OverflowError, OSError, ValueError):
                continue
            set_path(fields, path, normalized)
            return timestamp_ms
        return self.default_timestamp_ms

    def _find_level(self, fields: Dict[str, Any]) -> Optional[str]:
        for path in self.rules.level_fields:
            value = get_path(fields, path)
            if value is not None and not isinstance(value, (dict, list)):
                return str(value)
        return None
