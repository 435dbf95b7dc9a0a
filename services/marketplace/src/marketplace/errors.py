from __future__ import annotations

BAD_REQUEST = "BAD_REQUEST"
UNAUTHORIZED = "UNAUTHORIZED"
FORBIDDEN = "FORBIDDEN"
RATE_LIMITED = "RATE_LIMITED"
USER_NOT_FOUND = "USER_NOT_FOUND"
CATEGORY_SLUG_TAKEN = "CATEGORY_SLUG_TAKEN"
JOB_NOT_FOUND = "JOB_NOT_FOUND"
JOB_NOT_ACTIVE = "JOB_NOT_ACTIVE"
CATEGORY_NOT_FOUND = "CATEGORY_NOT_FOUND"
SETTING_NOT_FOUND = "SETTING_NOT_FOUND"
POSTCODE_NOT_FOUND = "POSTCODE_NOT_FOUND"
VALIDATION_INVALID_POSTCODE = "VALIDATION_INVALID_POSTCODE"
GEOCODER_UNAVAILABLE = "GEOCODER_UNAVAILABLE"


class MarketplaceError(Exception):
    status_code = 500

    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class BadRequestError(MarketplaceError):
    status_code = 400


class UnauthorizedError(MarketplaceError):
    status_code = 401


class ForbiddenError(MarketplaceError):
    status_code = 403


class NotFoundError(MarketplaceError):
    status_code = 404


class ConflictError(MarketplaceError):
    status_code = 409


class RateLimitedError(MarketplaceError):
    status_code = 429


class LocationNotResolvable(BadRequestError):
    """Raised when a location is required but the geocoder cannot place it."""

    def __init__(self, location_text: str | None) -> None:
        super().__init__(
            f"Location could not be resolved: {location_text or ''}".strip(),
            VALIDATION_INVALID_POSTCODE,
        )
        self.location_text = location_text


class GeocodingUnavailable(Exception):
    """The geocoding service timed out or answered with a server error."""
