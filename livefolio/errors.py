class LivefolioError(Exception):
    """Base error for the market-data sync and valuation core."""


class MalformedPayloadError(LivefolioError, ValueError):
    """Inbound stream payload is not a recognised price or heartbeat event."""


class PriceSourceUnavailableError(LivefolioError):
    """REST price backend could not be reached or answered with an error."""
