# lambdas/relay_logs/object_fetcher.py
import gzip
import logging
import shutil
import tempfile
import urllib.parse
import uuid
import zlib
from pathlib import Path
from typing import Iterator, Optional

import boto3
import requests
from botocore.exceptions import BotoCoreError, ClientError

from .models import ObjectLocation, RelayError

logger = logging.getLogger(__name__)

APIKEY_GRANT_TYPE = "urn:ibm:params:oauth:grant-type:apikey"
CHUNK_SIZE = 1024 * 1024
GZIP_MAGIC = b"\x1f\x8b"


class TokenExchangeError(RelayError):
    """The API key could not be exchanged for a bearer token."""
    pass


class ObjectFetchError(RelayError):
    """The triggering object could not be downloaded."""
    pass


def get_bearer_token(api_key: str, token_url: str, session: requests.Session, timeout: float) -> str:
    """
    Exchanges an API key for a short-lived bearer token at the identity provider.

    Raises:
        TokenExchangeError: On a network error, a non-2xx answer or an empty token.
    """
    try:
        response = session.post(
            token_url,
            data={"grant_type": APIKEY_GRANT_TYPE, "apikey": api_key},
            headers={"Accept": "application/json"},
            timeout=timeout,
        )
        response.raise_for_status()
        payload = response.json()
    except (requests.exceptions.RequestException, ValueError) as e:
        raise TokenExchangeError(f"Token exchange with {token_url} failed: {e}") from e

    if not isinstance(payload, dict):
        raise TokenExchangeError(f"Token exchange with {token_url} returned a non-object body.")
    token = payload.get("access_token")
    if not token:
        raise TokenExchangeError(f"Token exchange with {token_url} returned no access_token.")
    return token


class CosObjectFetcher:
    """
    Downloads an object over HTTPS with a bearer token obtained from an API key.
    """

    def __init__(self, api_key: str, token_url: str, session: Optional[requests.Session] = None, timeout: float = 30.0):
        self.api_key = api_key
        self.token_url = token_url
        self.session = session or requests.Session()
        self.timeout = timeout

    def fetch(self, location: ObjectLocation, destination: Path) -> int:
        token = get_bearer_token(self.api_key, self.token_url, self.session, self.timeout)
        url = f"https://{location.endpoint}/{location.bucket}/{urllib.parse.quote(location.key)}"
        logger.info(f"Fetching {location.url} ...")

        written = 0
        try:
            with self.session.get(
                url,
                headers={"Authorization": f"Bearer {token}"},
                stream=True,
                timeout=self.timeout,
            ) as response:
                response.raise_for_status()
                with open(destination, 'wb') as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
                            written += len(chunk)
        except requests.exceptions.RequestException as e:
            raise ObjectFetchError(f"Could not fetch {location.url}: {e}") from e

        logger.info(f"✅ Fetched {written} bytes from {location.url}")
        return written


class S3ObjectFetcher:
    """
    Downloads an object named by an S3 event notification using boto3.
    """

    def __init__(self, s3_client=None, region_name: Optional[str] = None):
        self.s3_client = s3_client or boto3.client('s3', region_name=region_name)

    def fetch(self, location: ObjectLocation, destination: Path) -> int:
        # Keys in S3 events are URL-encoded
        decoded_key = urllib.parse.unquote_plus(location.key)
        logger.info(f"Fetching s3://{location.bucket}/{decoded_key} ...")

        written = 0
        try:
            response = self.s3_client.get_object(Bucket=location.bucket, Key=decoded_key)
            with open(destination, 'wb') as f:
                for chunk in response["Body"].iter_chunks(chunk_size=CHUNK_SIZE):
                    f.write(chunk)
                    written += len(chunk)
        except (ClientError, BotoCoreError) as e:
            raise ObjectFetchError(f"Could not fetch s3://{location.bucket}/{decoded_key}: {e}") from e

        logger.info(f"✅ Fetched {written} bytes from s3://{location.bucket}/{decoded_key}")
        return written


def read_lines(path: Path) -> Iterator[str]:
    """
    Yields the lines of a downloaded object with their line endings, decompressing
    gzip content when the magic bytes say so.

    Raises:
        ObjectFetchError: If the object is truncated or not a readable archive.
    """
    try:
        with open(path, 'rb') as f:
            is_gzip = f.read(2) == GZIP_MAGIC

        opener = gzip.open if is_gzip else open
        # newline="" keeps \r\n intact so byte counts match the decompressed object
        with opener(path, 'rt', encoding='utf-8', errors='replace', newline="") as f:
            yield from f
    except (OSError, EOFError, zlib.error) as e:
        raise ObjectFetchError(f"{path.name} is not a readable archive: {e}") from e


class ScratchWorkspace:
    """
    A temp directory owned by exactly one run. The path carries a unique job
    tag so concurrent invocations never share it.
    """

    def __init__(self, root: Optional[str] = None, keep: bool = False):
        self.root = root
        self.keep = keep
        self.job_tag = uuid.uuid4().hex[:12]
        self.path: Optional[Path] = None

    def __enter__(self) -> "ScratchWorkspace":
        self.path = Path(tempfile.mkdtemp(prefix=f"log-relay-{self.job_tag}-", dir=self.root))
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()

    def cleanup(self) -> None:
        if self.path is None:
            return
        if self.keep:
            logger.info(f"ℹ️ Keeping scratch workspace for local testing: {self.path}")
            return
        try:
            shutil.rmtree(self.path)
        except OSError as e:
            logger.warning(f"⚠️ Could not remove scratch workspace {self.path}: {e}")
