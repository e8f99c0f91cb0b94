"""
AWS Signature Version 4 request signing (header variant).

Intent:
    Produce the `Authorization`, `X-Amz-Date`, `Content-Type` and `Host`
    headers for a JSON POST against a regional AWS endpoint without pulling in
    an SDK. Every step is a pure function so tests can check intermediate
    values with an injected clock.

Behavior:
    - Signed headers are fixed: content-type;host;x-amz-date.
    - The query string is always empty.
    - `path` is the path as sent on the wire (segments already URI-encoded);
      the canonical URI encodes each segment once more, which is what AWS
      expects for every service except S3.
"""
from __future__ import annotations

from datetime import datetime, timezone
import hashlib
import hmac
from typing import Optional
from urllib.parse import quote

from assesslab.evaluation.ports import ConfigurationError

ALGORITHM = "AWS4-HMAC-SHA256"
CONTENT_TYPE = "application/json"
SIGNED_HEADERS = "content-type;host;x-amz-date"


def _sha256_hex(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def _hmac(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def amz_timestamp(now: Optional[datetime] = None) -> str:
    """Format `now` (UTC) as YYYYMMDDTHHMMSSZ."""
    moment = now or datetime.now(timezone.utc)
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y%m%dT%H%M%SZ")


def canonical_uri(path: str) -> str:
    if not path:
        return "/"
    return "/".join(quote(segment, safe="-_.~") for segment in path.split("/"))


def canonical_request(method: str, path: str, host: str, timestamp: str, payload: str) -> str:
    canonical_headers = f"content-type:{CONTENT_TYPE}\nhost:{host}\nx-amz-date:{timestamp}\n"
    return "\n".join(
        [
            method.upper(),
            canonical_uri(path),
            "",
            canonical_headers,
            SIGNED_HEADERS,
            _sha256_hex(payload),
        ]
    )


def credential_scope(date_stamp: str, region: str, service: str) -> str:
    return f"{date_stamp}/{region}/{service}/aws4_request"


def string_to_sign(timestamp: str, scope: str, canonical: str) -> str:
    return f"{ALGORITHM}\n{timestamp}\n{scope}\n{_sha256_hex(canonical)}"


def derive_signing_key(secret_access_key: str, date_stamp: str, region: str, service: str) -> bytes:
    """HMAC chain seeded with "AWS4" + secret over date, region, service, aws4_request."""
    k_date = _hmac(f"AWS4{secret_access_key}".encode("utf-8"), date_stamp)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, service)
    return _hmac(k_service, "aws4_request")


def sign_request(
    method: str,
    path: str,
    payload: str,
    region: str,
    service: str,
    access_key_id: str,
    secret_access_key: str,
    *,
    host: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict[str, str]:
    """
    Build SigV4 headers for one request.

    Parameters:
        host: endpoint host; defaults to `{service}.{region}.amazonaws.com`.
        now: clock value, injected for deterministic tests.

    Raises:
        ConfigurationError: when credentials, region or service are missing.
    """
    if not access_key_id or not secret_access_key:
        raise ConfigurationError("AWS credentials (access key id and secret access key) are required")
    if not region:
        raise ConfigurationError("AWS region is required")
    if not service:
        raise ConfigurationError("AWS service name is required")

    target_host = host or f"{service}.{region}.amazonaws.com"
    timestamp = amz_timestamp(now)
    date_stamp = timestamp[:8]

    canonical = canonical_request(method, path, target_host, timestamp, payload)
    scope = credential_scope(date_stamp, region, service)
    to_sign = string_to_sign(timestamp, scope, canonical)
    key = derive_signing_key(secret_access_key, date_stamp, region, service)
    signature = hmac.new(key, to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

    authorization = (
        f"{ALGORITHM} Credential={access_key_id}/{scope}, "
        f"SignedHeaders={SIGNED_HEADERS}, Signature={signature}"
    )
    return {
        "Authorization": authorization,
        "X-Amz-Date": timestamp,
        "Content-Type": CONTENT_TYPE,
        "Host": target_host,
    }


__all__ = [
    "amz_timestamp",
    "canonical_request",
    "canonical_uri",
    "credential_scope",
    "derive_signing_key",
    "sign_request",
    "string_to_sign",
]
