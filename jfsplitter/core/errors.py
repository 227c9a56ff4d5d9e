from __future__ import annotations


class SplitterError(Exception):
    """Base error for jf-splitter."""


class UserMapError(SplitterError):
    """Persisted user map could not be read or written."""


class UpstreamPayloadError(SplitterError):
    """Upstream response body did not have the expected JSON shape."""
