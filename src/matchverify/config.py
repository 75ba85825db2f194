"""Match verification configuration with sensible defaults."""

import string
from dataclasses import dataclass

DEFAULT_BASE_URL = "http://localhost:3000"
VERIFY_PATH = "/match-verify"


@dataclass
class VerifyConfig:
    """Configuration for hosting, scanning and verifying matches.

    All timing values are in seconds.
    """

    # Canonical payload: {base_url}{verify_path}?id=...&code=...
    base_url: str = DEFAULT_BASE_URL
    verify_path: str = VERIFY_PATH

    # Hash-router links ({base_url}/#/match-verify?...). Decode accepts
    # both forms regardless of this flag.
    fragment_routing: bool = False

    # Secret generation. The alphabet is upper-case only, which is what
    # lets manual entry upper-case typed codes.
    secret_length: int = 6
    secret_alphabet: str = string.digits + string.ascii_uppercase

    # Fresh secrets tried when the generated one collides with an
    # existing match before giving up with CreationFailed.
    secret_attempts: int = 5

    # tenacity stop_after_attempt for transient storage errors
    max_retries: int = 3

    # Quorum polling
    poll_interval: float = 3.0
    # Surface a polling problem after N consecutive failed ticks
    poll_failure_threshold: int = 3

    # Capture loop: decode attempts per second
    scan_fps: float = 10.0
    # Frame read errors in a row before the camera counts as lost
    frame_error_threshold: int = 10

    # Device index used for the environment-facing stream
    camera_index: int = 0

    # Rendered QR edge length in pixels
    qr_size: int = 300

    # Insert the host into participants at creation time.
    # Off by default: the host counts only after verifying like a joiner.
    host_auto_join: bool = False

    # Persistent data storage
    data_dir: str = "data"
    db_path: str = "data/matchverify.db"
