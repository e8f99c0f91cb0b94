from __future__ import annotations

from datetime import datetime, timezone
import hashlib
import re

import pytest

from assesslab.evaluation.adapters import sigv4
from assesslab.evaluation.ports import ConfigurationError


FIXED_NOW = datetime(2024, 3, 7, 9, 5, 3, tzinfo=timezone.utc)
ACCESS_KEY = "AKIDEXAMPLE"
SECRET_KEY = "wJalrXUtnFEMI/K7MDENG+bPxRfiCYEXAMPLEKEY"
PATH = "/model/anthropic.claude-3-5-sonnet-20240620-v1%3A0/invoke"


def _sign(**overrides):
    params = dict(
        method="POST",
        path=PATH,
        payload='{"a": 1}',
        region="us-east-1",
        service="bedrock",
        access_key_id=ACCESS_KEY,
        secret_access_key=SECRET_KEY,
        host="bedrock-runtime.us-east-1.amazonaws.com",
        now=FIXED_NOW,
    )
    params.update(overrides)
    return sigv4.sign_request(
        params.pop("method"),
        params.pop("path"),
        params.pop("payload"),
        params.pop("region"),
        params.pop("service"),
        params.pop("access_key_id"),
        params.pop("secret_access_key"),
        **params,
    )


def test_amz_timestamp_format():
    assert sigv4.amz_timestamp(FIXED_NOW) == "20240307T090503Z"


def test_canonical_uri_double_encodes_colon():
    assert sigv4.canonical_uri(PATH) == "/model/anthropic.claude-3-5-sonnet-20240620-v1%253A0/invoke"
    assert sigv4.canonical_uri("") == "/"


def test_canonical_request_layout():
    canonical = sigv4.canonical_request("post", "/x", "example.com", "20240307T090503Z", "")
    lines = canonical.split("\n")
    assert lines[0] == "POST"
    assert lines[1] == "/x"
    assert lines[2] == ""
    assert lines[3:6] == ["content-type:application/json", "host:example.com", "x-amz-date:20240307T090503Z"]
    assert lines[-2] == "content-type;host;x-amz-date"
    # SHA-256 of the empty payload
    assert lines[-1] == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


def test_derive_signing_key_matches_published_example():
    key = sigv4.derive_signing_key(SECRET_KEY, "20120215", "us-east-1", "iam")
    assert key.hex() == "f4780e2d9f65fa895f9c67b32ce1baf0b0d8a43505a000a1a9e090d414db404d"


def test_string_to_sign_hashes_canonical_request():
    canonical = "POST\n/\n\nhost:x\n\nhost\nabc"
    result = sigv4.string_to_sign("20240307T090503Z", "20240307/us-east-1/bedrock/aws4_request", canonical)
    assert result.split("\n") == [
        "AWS4-HMAC-SHA256",
        "20240307T090503Z",
        "20240307/us-east-1/bedrock/aws4_request",
        hashlib.sha256(canonical.encode("utf-8")).hexdigest(),
    ]


def test_sign_request_headers_shape():
    headers = _sign()
    assert headers["X-Amz-Date"] == "20240307T090503Z"
    assert headers["Content-Type"] == "application/json"
    assert headers["Host"] == "bedrock-runtime.us-east-1.amazonaws.com"
    match = re.fullmatch(
        r"AWS4-HMAC-SHA256 Credential=AKIDEXAMPLE/20240307/us-east-1/bedrock/aws4_request, "
        r"SignedHeaders=content-type;host;x-amz-date, Signature=([0-9a-f]{64})",
        headers["Authorization"],
    )
    assert match is not None


def test_sign_request_is_deterministic_for_fixed_clock():
    assert _sign() == _sign()


def test_signature_changes_with_payload_and_time():
    base = _sign()["Authorization"]
    assert _sign(payload='{"a": 2}')["Authorization"] != base
    later = datetime(2024, 3, 7, 9, 5, 4, tzinfo=timezone.utc)
    assert _sign(now=later)["Authorization"] != base


def test_default_host_uses_service_and_region():
    headers = _sign(host=None, region="eu-west-1")
    assert headers["Host"] == "bedrock.eu-west-1.amazonaws.com"


@pytest.mark.parametrize(
    "overrides",
    [
        {"access_key_id": ""},
        {"secret_access_key": ""},
        {"region": ""},
        {"service": ""},
    ],
)
def test_missing_inputs_raise_configuration_error(overrides):
    with pytest.raises(ConfigurationError):
        _sign(**overrides)
