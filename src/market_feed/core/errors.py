class MarketFeedError(Exception):
    """Base exception for market-feed errors."""


class UpstreamError(MarketFeedError):
    """Transient upstream failure: network error, timeout, non-2xx."""


class UpstreamAbsent(UpstreamError):
    """The venue does not know the instrument (404, empty body, code != 0)."""


class ParseError(UpstreamError):
    """Payload was malformed, missing a required field, or carried a non-positive price."""
