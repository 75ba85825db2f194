"""Encode and decode the scannable match payload.

Two wire formats:

* **URL** (canonical) -- ``{base}/match-verify?id=<match_id>&code=<secret>``,
  optionally hash-routed as ``{base}/#/match-verify?...``.  Any phone
  camera app can open it, not only our scanner.
* **Legacy JSON** (decode only) -- ``{"matchId": "...", "code": "..."}``.

Decoding sniffs the format first (``sniff_format``) and then runs exactly
one parser, so each path can be tested on its own.  Every failure surfaces
as ``MalformedPayload``.
"""

import json
import logging
from enum import Enum
from urllib.parse import parse_qs, urlencode, urlsplit

from pydantic import ValidationError

from matchverify.config import VERIFY_PATH, VerifyConfig
from matchverify.exceptions import MalformedPayload
from matchverify.models import ScannedCode

logger = logging.getLogger(__name__)

FRAGMENT_PREFIX = "#/"


class PayloadFormat(str, Enum):
    URL = "url"
    LEGACY_JSON = "legacy_json"
    UNKNOWN = "unknown"


def encode(match_id: str, secret: str, config: VerifyConfig | None = None) -> str:
    """Build the canonical verification URL for a match."""
    if not match_id or not secret:
        raise ValueError("match_id and secret are required")
    if config is None:
        config = VerifyConfig()

    base = config.base_url.rstrip("/")
    path = config.verify_path if config.verify_path.startswith("/") else "/" + config.verify_path
    if config.fragment_routing:
        path = "/" + FRAGMENT_PREFIX + path.lstrip("/")
    query = urlencode({"id": match_id, "code": secret})
    return f"{base}{path}?{query}"


def sniff_format(raw: str, verify_path: str = VERIFY_PATH) -> PayloadFormat:
    """Classify *raw* without parsing it.

    URL when it is absolute (``http``/``https``) or mentions the verify
    path; legacy JSON when it looks like a JSON object; unknown otherwise.
    """
    text = raw.strip()
    marker = verify_path.strip("/")
    if text.lower().startswith(("http://", "https://")) or (marker and marker in text):
        return PayloadFormat.URL
    if text.startswith("{"):
        return PayloadFormat.LEGACY_JSON
    return PayloadFormat.UNKNOWN


def decode_url(raw: str) -> ScannedCode:
    """Read ``id`` and ``code`` query parameters from a verification URL.

    A leading fragment-routing prefix (``/#/match-verify``) is folded into
    the path so the query string is visible to the URL parser.
    """
    text = raw.strip().replace(FRAGMENT_PREFIX, "/", 1)
    try:
        params = parse_qs(urlsplit(text).query)
    except ValueError as exc:
        raise MalformedPayload(f"Unparseable verification URL: {exc}") from exc
    return _build(params.get("id", [""])[0], params.get("code", [""])[0])


def decode_legacy_json(raw: str) -> ScannedCode:
    """Read ``matchId`` and ``code`` from the legacy JSON payload."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise MalformedPayload(f"Invalid JSON payload: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise MalformedPayload("JSON payload is not an object")
    return _build(data.get("matchId"), data.get("code"))


def decode(raw: str, config: VerifyConfig | None = None) -> ScannedCode:
    """Decode a scanned payload into its (match id, secret) pair.

    Raises:
        MalformedPayload: the text is neither format, or a field is missing.
    """
    if not isinstance(raw, str) or not raw.strip():
        raise MalformedPayload("Empty payload")
    verify_path = config.verify_path if config else VERIFY_PATH

    fmt = sniff_format(raw, verify_path)
    if fmt is PayloadFormat.URL:
        return decode_url(raw)
    if fmt is PayloadFormat.LEGACY_JSON:
        return decode_legacy_json(raw)
    raise MalformedPayload("Payload is neither a verification URL nor JSON")


def _build(match_id, secret) -> ScannedCode:
    try:
        return ScannedCode(match_id=match_id, secret=secret)
    except ValidationError as exc:
        raise MalformedPayload(
            f"Payload missing match id or code ({exc.error_count()} errors)"
        ) from exc
