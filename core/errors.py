"""
core/errors.py -- Exception types for the threat intelligence engine.

Recoverable feed problems (FeedUnavailableError, MalformedRecordError) are
caught close to where they happen and turned into skips or partial sync runs.
The lookup and lifecycle errors below are raised to the caller of a single
operation; the HTTP adapter maps them onto status codes.
"""


class ThreatIntelError(Exception):
    """Base class for all engine errors."""


class FeedUnavailableError(ThreatIntelError):
    """The NVD, KEV, or breach source could not be reached or returned garbage."""


class MalformedRecordError(ThreatIntelError):
    """A single feed record could not be normalized."""


class CveNotFoundError(ThreatIntelError):
    """The CVE is neither cached nor known to the feed."""


class MatchNotFoundError(ThreatIntelError):
    """No asset/CVE match with the requested id."""


class AssetNotFoundError(ThreatIntelError):
    pass


class VendorNotFoundError(ThreatIntelError):
    pass


class InvalidTransitionError(ThreatIntelError):
    """The requested review-status change is not allowed from the current state."""

    def __init__(self, match_id: int, from_status: str, to_status: str) -> None:
        super().__init__(f"match {match_id}: cannot move from {from_status!r} to {to_status!r}")
        self.match_id = match_id
        self.from_status = from_status
        self.to_status = to_status


class AlertDeliveryError(ThreatIntelError):
    """The alert webhook could not be reached or rejected the payload."""
