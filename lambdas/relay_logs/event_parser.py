# lambdas/relay_logs/event_parser.py
import urllib.parse
from pathlib import PurePosixPath
from typing import Any, List, Optional

from .forwarder import normalize_ingestion_url
from .models import AppSettings, IngestionEndpoint, ObjectLocation, RelayConfig, RelayError

_ARCHIVE_SUFFIXES = (".gz", ".jsonl", ".json", ".log")


class InvalidEventError(RelayError, ValueError):
    """The trigger event or settings are missing a required value."""
    pass


def optional_value(value: Any) -> Optional[str]:
    """
    Normalizes an absent parameter to None. Empty strings and the text "null"
    (how unset bindings arrive from some triggers) count as absent.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() == "null":
        return None
    return text


def _first(*values: Any) -> Optional[str]:
    for value in values:
        normalized = optional_value(value)
        if normalized is not None:
            return normalized
    return None


def _bound_credential(event: dict, name: str) -> Optional[str]:
    """Looks for a credential in any service binding under __bx_creds."""
    bindings = event.get("__bx_creds") or {}
    if not isinstance(bindings, dict):
        return None
    for binding in bindings.values():
        if isinstance(binding, dict):
            value = optional_value(binding.get(name))
            if value is not None:
                return value
    return None


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return optional_value(value) is not None and str(value).strip().lower() in ("1", "true", "yes", "on")


def derive_app_label(key: str) -> str:
    """
    The first path segment of a nested key, else the file name without its
    archive suffixes.
    """
    path = PurePosixPath(key.strip("/"))
    if len(path.parts) > 1:
        return path.parts[0]
    name = path.name
    while name.lower().endswith(_ARCHIVE_SUFFIXES):
        name = name[:name.rfind(".")]
    return name or key


def _parse_location(event: dict, settings: AppSettings) -> ObjectLocation:
    records = event.get("Records")
    if isinstance(records, list) and records:
        try:
            s3_record = records[0]["s3"]
            bucket = s3_record["bucket"]["name"]
            key = s3_record["object"]["key"]
        except (KeyError, IndexError, TypeError):
            raise InvalidEventError("Records[0] is not a valid S3 event notification.")
        if not optional_value(bucket) or not optional_value(key):
            raise InvalidEventError("S3 event notification has an empty bucket or key.")
        return ObjectLocation(kind="s3", bucket=bucket, key=key)

    notification = event.get("notification") or {}
    if not isinstance(notification, dict):
        raise InvalidEventError("'notification' must be an object.")
    bucket = _first(event.get("bucket"), notification.get("bucket_name"))
    key = _first(event.get("key"), notification.get("object_name"))
    endpoint = _first(event.get("endpoint"), settings.cos_endpoint)

    missing = [name for name, value in (("bucket", bucket), ("key", key), ("endpoint", endpoint)) if value is None]
    if missing:
        raise InvalidEventError(f"Missing required trigger field(s): {', '.join(missing)}")
    return ObjectLocation(kind="cos", bucket=bucket, key=key, endpoint=endpoint)


def _parse_endpoints(event: dict, settings: AppSettings) -> List[IngestionEndpoint]:
    primary_url = _first(event.get("ingestion_endpoint"), settings.ingestion_endpoint)
    primary_key = _first(
        event.get("ingestion_key"), _bound_credential(event, "ingestion_key"), settings.ingestion_key
    )
    if primary_url is None:
        raise InvalidEventError("Missing required value: ingestion_endpoint")
    if primary_key is None:
        raise InvalidEventError("Missing required credential: ingestion_key")

    endpoints = [IngestionEndpoint(name="primary", url=normalize_ingestion_url(primary_url), key=primary_key)]

    secondary_url = _first(event.get("secondary_ingestion_endpoint"), settings.secondary_ingestion_endpoint)
    if secondary_url is not None:
        secondary_key = _first(
            event.get("secondary_ingestion_key"), settings.secondary_ingestion_key, primary_key
        )
        endpoints.append(
            IngestionEndpoint(name="secondary", url=normalize_ingestion_url(secondary_url), key=secondary_key)
        )
    return endpoints


def _parse_chunk_size(event: dict, default: int) -> int:
    raw = optional_value(event.get("chunk_size"))
    if raw is None:
        return default
    try:
        chunk_size = int(raw)
    except ValueError:
        raise InvalidEventError(f"Invalid chunk_size: {raw!r} is not an integer.")
    if chunk_size < 1:
        raise InvalidEventError(f"Invalid chunk_size: {chunk_size} must be positive.")
    return chunk_size


def parse_and_validate_event(event: dict, settings: AppSettings) -> RelayConfig:
    """
    Parses the trigger event, fills gaps from settings and validates everything
    the run needs in one pass.

    Args:
        event: The trigger event (COS trigger parameters or an S3 notification).
        settings: Environment-backed defaults.

    Returns:
        A RelayConfig ready for the fetch / pipeline / forward steps.

    Raises:
        InvalidEventError: If any required value is absent or invalid.
    """
    if not isinstance(event, dict):
        raise InvalidEventError("Trigger event must be a JSON object.")

    location = _parse_location(event, settings)

    api_key = None
    if location.kind == "cos":
        api_key = _first(event.get("apikey"), _bound_credential(event, "apikey"), settings.cos_api_key)
        if api_key is None:
            raise InvalidEventError("Missing required credential: apikey")

    endpoints = _parse_endpoints(event, settings)
    key = urllib.parse.unquote_plus(location.key) if location.kind == "s3" else location.key
    app_label = _first(event.get("app")) or derive_app_label(key)

    return RelayConfig(
        location=location,
        endpoints=tuple(endpoints),
        app_label=app_label,
        api_key=api_key,
        max_batch_records=_parse_chunk_size(event, settings.max_batch_records),
        max_batch_bytes=settings.max_batch_bytes,
        timeout_seconds=settings.http_timeout_seconds,
        keep_scratch=settings.keep_scratch or _as_bool(event.get("keep_scratch")),
    )
