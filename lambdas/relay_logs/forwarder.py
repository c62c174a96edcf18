# lambdas/relay_logs/forwarder.py
import logging
import time
from typing import Iterable, List, Optional

import requests

from .models import Batch, ForwardOutcome, IngestionEndpoint, IngestionLine, IngestionRequest

logger = logging.getLogger(__name__)

INGEST_PATH = "/logs/ingest"


def normalize_ingestion_url(endpoint: str) -> str:
    """
    Accepts either a full URL or a bare ingestion host such as
    'logs.us-south.logging.cloud.ibm.com'.
    """
    endpoint = endpoint.strip()
    if endpoint.startswith(("http://", "https://")):
        return endpoint
    return f"https://{endpoint.rstrip('/')}{INGEST_PATH}"


def build_ingestion_request(batch: Batch, app_label: str, source_label: str) -> IngestionRequest:
    """Wraps a batch in the ingestion API's request schema, keeping record order."""
    return IngestionRequest(lines=[
        IngestionLine(
            timestamp=record.timestamp_ms,
            line=record.line,
            app=app_label,
            level=record.level,
            meta={"source": source_label},
        )
        for record in batch.records
    ])


class IngestionForwarder:
    """
    Posts batches to the log ingestion API. Every call is attempted exactly
    once; failures come back as ForwardOutcome values instead of exceptions.
    """

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 30.0):
        self.session = session or requests.Session()
        self.timeout = timeout

    def forward(self, batch: Batch, endpoint: IngestionEndpoint, app_label: str, source_label: str) -> ForwardOutcome:
        body = build_ingestion_request(batch, app_label, source_label).model_dump_json(exclude_none=True)
        return self._post(batch.index, endpoint, body, source_label)

    def forward_to_all(
        self,
        batch: Batch,
        endpoints: Iterable[IngestionEndpoint],
        app_label: str,
        source_label: str,
    ) -> List[ForwardOutcome]:
        """Serializes the batch once and sends it to each endpoint independently."""
        body = build_ingestion_request(batch, app_label, source_label).model_dump_json(exclude_none=True)
        return [self._post(batch.index, endpoint, body, source_label) for endpoint in endpoints]

    def _post(self, batch_index: int, endpoint: IngestionEndpoint, body: str, source_label: str) -> ForwardOutcome:
        params = {"hostname": source_label, "now": int(time.time() * 1000)}
        try:
            response = self.session.post(
                endpoint.url,
                params=params,
                data=body.encode("utf-8"),
                headers={"Content-Type": "application/json; charset=UTF-8"},
                auth=(endpoint.key, ""),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            return ForwardOutcome(batch_index, endpoint.name, False, http_status=status, error=str(e))
        except requests.exceptions.RequestException as e:
            return ForwardOutcome(batch_index, endpoint.name, False, error=str(e))

        logger.info(f"✅ Batch #{batch_index + 1} accepted by '{endpoint.name}' (status: {response.status_code}).")
        return ForwardOutcome(batch_index, endpoint.name, True, http_status=response.status_code)
