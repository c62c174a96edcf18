# lambdas/relay_logs/models.py
"""
Settings, plain-dataclass models and the ingestion wire models for the Log Relay.
"""
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    """
    Manages env vars using Pydantic BaseSettings.
    A .env file next to the working directory is picked up automatically for local runs.
    """
    model_config = SettingsConfigDict(
        env_file='.env', env_file_encoding='utf-8', extra='ignore', populate_by_name=True
    )

    iam_token_url: str = Field("https://iam.cloud.ibm.com/identity/token", alias='IAM_TOKEN_URL')
    cos_endpoint: Optional[str] = Field(None, alias='COS_ENDPOINT')
    cos_api_key: Optional[str] = Field(None, alias='COS_API_KEY')

    ingestion_endpoint: Optional[str] = Field(None, alias='INGESTION_ENDPOINT')
    ingestion_key: Optional[str] = Field(None, alias='INGESTION_KEY')
    secondary_ingestion_endpoint: Optional[str] = Field(None, alias='SECONDARY_INGESTION_ENDPOINT')
    secondary_ingestion_key: Optional[str] = Field(None, alias='SECONDARY_INGESTION_KEY')

    # The ingestion API rejects bodies over 10 MB; the remainder is envelope headroom.
    max_batch_records: int = Field(4000, alias='MAX_BATCH_RECORDS', gt=0)
    max_batch_bytes: int = Field(9_000_000, alias='MAX_BATCH_BYTES', gt=0)
    http_timeout_seconds: float = Field(30.0, alias='HTTP_TIMEOUT_SECONDS', gt=0)

    rules_file: Optional[str] = Field(None, alias='RULES_FILE')
    keep_scratch: bool = Field(False, alias='KEEP_SCRATCH')
    scratch_root: Optional[str] = Field(None, alias='SCRATCH_ROOT')

    aws_region: str = Field("us-east-1", alias='AWS_REGION')
    log_level: str = Field("INFO", alias='LOG_LEVEL')


@lru_cache
def get_settings() -> AppSettings:
    """Returns a single, shared settings instance."""
    return AppSettings()


class RelayError(Exception):
    """Base class for failures that abort the whole relay run."""
    pass


# Data models
@dataclass(frozen=True)
class ObjectLocation:
    """
    Where the triggering object lives.
    kind is "cos" (bearer-token HTTPS GET) or "s3" (boto3).
    """
    kind: str
    bucket: str
    key: str
    endpoint: Optional[str] = None

    @property
    def url(self) -> str:
        if self.kind == "s3":
            return f"s3://{self.bucket}/{self.key}"
        return f"https://{self.endpoint}/{self.bucket}/{self.key}"


@dataclass(frozen=True)
class IngestionEndpoint:
    name: str
    url: str
    key: str


@dataclass(frozen=True)
class RelayConfig:
    """Everything a single run needs, validated once before any network call."""
    location: ObjectLocation
    endpoints: Tuple[IngestionEndpoint, ...]
    app_label: str
    api_key: Optional[str] = None
    max_batch_records: int = 4000
    max_batch_bytes: int = 9_000_000
    timeout_seconds: float = 30.0
    keep_scratch: bool = False


@dataclass(frozen=True)
class Record:
    """
    One transformed log record.
    line is the compact JSON text of fields and size its UTF-8 byte length.
    """
    fields: Dict[str, Any]
    timestamp_ms: int
    line: str
    size: int
    level: Optional[str] = None


@dataclass(frozen=True)
class Batch:
    index: int
    records: Tuple[Record, ...]

    @property
    def size(self) -> int:
        return sum(record.size for record in self.records)

    def __len__(self) -> int:
        return len(self.records)


@dataclass(frozen=True)
class ForwardOutcome:
    batch_index: int
    endpoint: str
    success: bool
    http_status: Optional[int] = None
    error: Optional[str] = None


@dataclass
class PipelineResult:
    """Aggregate counters for one run. Never persisted."""
    lines_read: int = 0
    bytes_read: int = 0
    records_ingested: int = 0
    ingest_bytes: int = 0
    parse_failures: int = 0
    filtered_records: int = 0
    batches: int = 0
    outcomes: List[ForwardOutcome] = field(default_factory=list)

    @property
    def failed_batches(self) -> int:
        return len({o.batch_index for o in self.outcomes if not o.success})

    def to_summary(self, source: str, object_size: int) -> Dict[str, Any]:
        return {
            "source": source,
            "object-size": object_size,
            "decompressed-size": self.bytes_read,
            "ingest-size": self.ingest_bytes,
            "ingested-records": self.records_ingested,
            "batches": self.batches,
            "failed-batches": self.failed_batches,
            "skipped-lines": self.parse_failures,
            "filtered-records": self.filtered_records,
        }


# Wire models for the ingestion API
class IngestionLine(BaseModel):
    """
    A single line as the ingestion API expects it
    """
    # milliseconds since the epoch
    timestamp: int
    # the record as compact JSON text
    line: str
    app: str
    level: Optional[str] = None
    meta: Dict[str, Any] = Field(default_factory=dict)


class IngestionRequest(BaseModel):
    lines: List[IngestionLine]
