"""
Marketplace exceptions

Every failure the matching and investment services surface is one of the
classes below. The HTTP layer renders them with `to_dict()`.
"""
from typing import Optional


class MarketplaceError(Exception):
    """Base marketplace exception."""

    error_code = "MARKETPLACE_ERROR"
    default_message = "Something went wrong. Please try again."
    status_code = 400

    def __init__(self, message: Optional[str] = None, details: Optional[str] = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        response = {
            "status": "error",
            "error_code": self.error_code,
            "message": self.message,
        }
        if self.details:
            response["details"] = self.details
        return response


# ----- Input validation -----
class InvalidAmount(MarketplaceError):
    error_code = "INVALID_AMOUNT"
    default_message = "Investment amount must be greater than zero."


class InvalidData(MarketplaceError):
    error_code = "INVALID_DATA"
    default_message = "Please check your information and try again."
    status_code = 422


class UndefinedValuation(InvalidData):
    error_code = "UNDEFINED_VALUATION"
    default_message = "Valuation is undefined for a business offering no equity."


# ----- Authorization -----
class NotAuthorized(MarketplaceError):
    error_code = "NOT_AUTHORIZED"
    default_message = "You don't have permission to perform this action."
    status_code = 403


# ----- Not found -----
class NotFound(MarketplaceError):
    error_code = "NOT_FOUND"
    default_message = "Resource not found."
    status_code = 404


class BusinessNotFound(NotFound):
    error_code = "BUSINESS_NOT_FOUND"
    default_message = "Business not found."


class InvestmentNotFound(NotFound):
    error_code = "INVESTMENT_NOT_FOUND"
    default_message = "Investment not found."


# ----- State conflict -----
class AlreadyCompleted(MarketplaceError):
    error_code = "ALREADY_COMPLETED"
    default_message = "This investment has already been resolved."
    status_code = 409


class AlreadyExists(MarketplaceError):
    error_code = "ALREADY_EXISTS"
    default_message = "This record already exists."
    status_code = 409


# ----- Exhaustion -----
class NoMoreBusinesses(MarketplaceError):
    """Raised when an investor has swiped through every eligible business.

    Not a failure: callers show an empty state instead of an error.
    """

    error_code = "NO_MORE_BUSINESSES"
    default_message = "No more businesses to show right now."
    status_code = 404


# ----- Transient store failures -----
class StoreFailure(MarketplaceError):
    status_code = 502

    def __init__(self, details: Optional[str] = None):
        super().__init__(details=details)


class FetchFailed(StoreFailure):
    error_code = "FETCH_FAILED"
    default_message = "Network error. Please check your connection."


class UpdateFailed(StoreFailure):
    error_code = "UPDATE_FAILED"
    default_message = "Failed to save your changes. Please try again."


class CreationFailed(StoreFailure):
    error_code = "CREATION_FAILED"
    default_message = "Failed to process investment. Please try again."
