# tests/test_object_fetcher.py
import gzip
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests
from botocore.exceptions import ClientError

from lambdas.relay_logs.models import ObjectLocation
from lambdas.relay_logs.object_fetcher import (
    CosObjectFetcher,
    ObjectFetchError,
    S3ObjectFetcher,
    ScratchWorkspace,
    TokenExchangeError,
    get_bearer_token,
    read_lines,
)

TOKEN_URL = "https://iam.example.com/identity/token"
COS_LOCATION = ObjectLocation(kind="cos", bucket="my-bucket", key="app/2024/logs.jsonl.gz", endpoint="s3.example.com")


def token_response(payload=None, status_code=200) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload if payload is not None else {"access_token": "tok-123"}
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(f"{status_code} Error")
    return response


def streaming_response(chunks) -> MagicMock:
    response = MagicMock()
    response.iter_content.return_value = iter(chunks)
    response.__enter__.return_value = response
    return response


# Token exchange
def test_get_bearer_token_posts_api_key():
    session = MagicMock()
    session.post.return_value = token_response()

    token = get_bearer_token("my-api-key", TOKEN_URL, session, timeout=7)

    assert token == "tok-123"
    kwargs = session.post.call_args.kwargs
    assert kwargs["data"] == {"grant_type": "urn:ibm:params:oauth:grant-type:apikey", "apikey": "my-api-key"}
    assert kwargs["timeout"] == 7


@pytest.mark.parametrize("response", [
    token_response(status_code=401),
    token_response(payload={"access_token": ""}),
    token_response(payload={"errorMessage": "bad key"}),
    token_response(payload=[]),
    token_response(payload="tok-123"),
])
def test_get_bearer_token_failures_are_distinct(response):
    session = MagicMock()
    session.post.return_value = response
    with pytest.raises(TokenExchangeError):
        get_bearer_token("my-api-key", TOKEN_URL, session, timeout=7)


def test_get_bearer_token_network_error():
    session = MagicMock()
    session.post.side_effect = requests.exceptions.ConnectionError("dns failure")
    with pytest.raises(TokenExchangeError):
        get_bearer_token("my-api-key", TOKEN_URL, session, timeout=7)


# COS fetch
def test_cos_fetch_streams_to_destination(tmp_path: Path):
    session = MagicMock()
    session.post.return_value = token_response()
    session.get.return_value = streaming_response([b"abc", b"", b"defg"])
    destination = tmp_path / "object.gz"

    written = CosObjectFetcher("key", TOKEN_URL, session=session, timeout=3).fetch(COS_LOCATION, destination)

    assert written == 7
    assert destination.read_bytes() == b"abcdefg"
    args, kwargs = session.get.call_args
    assert args[0] == "https://s3.example.com/my-bucket/app/2024/logs.jsonl.gz"
    assert kwargs["headers"] == {"Authorization": "Bearer tok-123"}
    assert kwargs["stream"] is True


def test_cos_fetch_token_failure_skips_download(tmp_path: Path):
    session = MagicMock()
    session.post.return_value = token_response(status_code=403)

    with pytest.raises(TokenExchangeError):
        CosObjectFetcher("key", TOKEN_URL, session=session).fetch(COS_LOCATION, tmp_path / "object.gz")
    session.get.assert_not_called()


def test_cos_fetch_http_error(tmp_path: Path):
    session = MagicMock()
    session.post.return_value = token_response()
    response = streaming_response([])
    response.raise_for_status.side_effect = requests.exceptions.HTTPError("404 Not Found")
    session.get.return_value = response

    with pytest.raises(ObjectFetchError):
        CosObjectFetcher("key", TOKEN_URL, session=session).fetch(COS_LOCATION, tmp_path / "object.gz")


# S3 fetch
def test_s3_fetch_uses_decoded_key(tmp_path: Path):
    s3_client = MagicMock()
    body = MagicMock()
    body.iter_chunks.return_value = iter([b"hello ", b"world"])
    s3_client.get_object.return_value = {"Body": body}
    location = ObjectLocation(kind="s3", bucket="logs", key="my+app/file%3A1.jsonl.gz")

    written = S3ObjectFetcher(s3_client=s3_client).fetch(location, tmp_path / "object.gz")

    assert written == 11
    s3_client.get_object.assert_called_once_with(Bucket="logs", Key="my app/file:1.jsonl.gz")


def test_s3_fetch_client_error(tmp_path: Path):
    s3_client = MagicMock()
    s3_client.get_object.side_effect = ClientError(
        {"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject"
    )
    location = ObjectLocation(kind="s3", bucket="logs", key="nope.gz")

    with pytest.raises(ObjectFetchError):
        S3ObjectFetcher(s3_client=s3_client).fetch(location, tmp_path / "object.gz")


@patch('lambdas.relay_logs.object_fetcher.boto3.client')
def test_s3_fetcher_builds_client_with_region(mock_boto_client):
    S3ObjectFetcher(region_name="eu-west-1")
    mock_boto_client.assert_called_once_with('s3', region_name="eu-west-1")


# Line reading
def test_read_lines_gzip_and_plain(tmp_path: Path):
    gz_path = tmp_path / "a.gz"
    with gzip.open(gz_path, 'wt', encoding='utf-8') as f:
        f.write('{"a": 1}\n{"b": 2}\r\n')
    plain_path = tmp_path / "b.jsonl"
    plain_path.write_text('{"c": 3}\n')

    assert list(read_lines(gz_path)) == ['{"a": 1}\n', '{"b": 2}\r\n']
    assert list(read_lines(plain_path)) == ['{"c": 3}\n']


def test_read_lines_truncated_gzip_is_a_fetch_error(tmp_path: Path):
    truncated = tmp_path / "cut.gz"
    data = gzip.compress(b'{"a": 1}\n' * 500)
    truncated.write_bytes(data[:len(data) // 2])

    with pytest.raises(ObjectFetchError):
        list(read_lines(truncated))


def test_read_lines_empty_file(tmp_path: Path):
    empty = tmp_path / "empty"
    empty.write_bytes(b"")
    assert list(read_lines(empty)) == []


# Scratch workspace
def test_scratch_workspace_is_unique_and_removed(tmp_path: Path):
    with ScratchWorkspace(str(tmp_path)) as first, ScratchWorkspace(str(tmp_path)) as second:
        assert first.path != second.path
        assert first.path.is_dir()
        (first.path / "object.gz").write_bytes(b"x")
    assert not first.path.exists()
    assert not second.path.exists()


def test_scratch_workspace_kept_when_asked(tmp_path: Path):
    with ScratchWorkspace(str(tmp_path), keep=True) as workspace:
        pass
    assert workspace.path.is_dir()


def test_scratch_cleanup_failure_is_not_fatal(tmp_path: Path):
    with patch('lambdas.relay_logs.object_fetcher.shutil.rmtree', side_effect=OSError("busy")):
        with ScratchWorkspace(str(tmp_path)) as workspace:
            pass
    assert workspace.path.is_dir()
