"""Out-of-band match verification: host a code, scan it, reach quorum."""

__version__ = "0.1.0"
