# lambdas/relay_logs/app.py
import json
import logging
import sys
import time
from typing import Any, Dict, Optional

import requests

from .event_parser import parse_and_validate_event
from .forwarder import IngestionForwarder
from .models import AppSettings, RelayConfig, RelayError, get_settings
from .object_fetcher import CosObjectFetcher, S3ObjectFetcher, ScratchWorkspace, read_lines
from .pipeline import RecordPipeline
from .record_rules import RecordTransformer, load_record_rules

logger = logging.getLogger(__name__)

ARCHIVE_NAME = "object.jsonl.gz"


def configure_logging(level: str = "INFO") -> None:
    """Diagnostics go to stderr so stdout only ever carries the summary."""
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        stream=sys.stderr,
        level=log_level,
        format='%(asctime)s - %(levelname)s - %(name)s - %(message)s',
    )
    # Lambda-style runtimes install their own root handler first, so basicConfig alone is a no-op there
    logging.getLogger().setLevel(log_level)


def build_fetcher(config: RelayConfig, settings: AppSettings, session: requests.Session, s3_client=None):
    if config.location.kind == "s3":
        return S3ObjectFetcher(s3_client=s3_client, region_name=settings.aws_region)
    return CosObjectFetcher(
        api_key=config.api_key,
        token_url=settings.iam_token_url,
        session=session,
        timeout=config.timeout_seconds,
    )


def run_relay(
    event: Dict[str, Any],
    settings: Optional[AppSettings] = None,
    session: Optional[requests.Session] = None,
    s3_client=None,
    keep_scratch: bool = False,
) -> Dict[str, Any]:
    """
    Fetches the object named by the event, relays its records to the ingestion
    endpoint(s) and returns the run summary.

    Raises:
        RelayError: When configuration, credentials, token exchange or the object fetch fail.
    """
    settings = settings or get_settings()
    session = session or requests.Session()

    # Step 1: Validate everything before touching the network
    config = parse_and_validate_event(event, settings)
    rules = load_record_rules(settings.rules_file)
    endpoint_names = ", ".join(endpoint.name for endpoint in config.endpoints)
    logger.info(f"Processing file: {config.location.url} (app: '{config.app_label}', endpoints: {endpoint_names})")

    with ScratchWorkspace(settings.scratch_root, keep=keep_scratch or config.keep_scratch) as workspace:
        # Step 2: Fetch the object into the scratch workspace
        archive_path = workspace.path / ARCHIVE_NAME
        fetcher = build_fetcher(config, settings, session, s3_client)
        object_size = fetcher.fetch(config.location, archive_path)

        # Step 3: Stream records through the pipeline, forwarding each batch as it is sealed
        transformer = RecordTransformer(rules, default_timestamp_ms=int(time.time() * 1000))
        pipeline = RecordPipeline(
            transformer,
            max_batch_records=config.max_batch_records,
            max_batch_bytes=config.max_batch_bytes,
        )
        forwarder = IngestionForwarder(session=session, timeout=config.timeout_seconds)
        result = pipeline.run(
            read_lines(archive_path),
            forward=lambda batch: forwarder.forward_to_all(
                batch, config.endpoints, config.app_label, config.location.bucket
            ),
        )

    # Step 4: Summarize
    return result.to_summary(source=config.location.url, object_size=object_size)


def handler(event: Dict[str, Any], context: object) -> Dict[str, Any]:
    """
    Main handler, triggered by an object-store notification.
    Returns the summary; aborts by re-raising so the platform records no result.
    """
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("--- Log Relay Triggered ---")

    try:
        summary = run_relay(event, settings)
    except RelayError as e:
        logger.error(f"❌ FATAL: {e}")
        raise

    logger.info(f"✅ Relay complete: {json.dumps(summary)}")
    return summary
