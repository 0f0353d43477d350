"""Named failures for marketplace actions.

Every write action either commits fully or fails with exactly one
FailureReason. Components raise the matching MarketplaceError subclass;
the service facade converts it into a failed ServiceResult.
"""

from __future__ import annotations

import enum


class FailureReason(str, enum.Enum):
    """Why a marketplace action was rejected."""
    ALREADY_REGISTERED = "already_registered"
    INVALID_ROLE = "invalid_role"
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    INVALID_STATE = "invalid_state"
    ALREADY_APPLIED = "already_applied"
    BID_EXCEEDS_PRICE = "bid_exceeds_price"
    ALREADY_RELEASED = "already_released"
    INSUFFICIENT_ESCROW = "insufficient_escrow"
    TRANSFER_FAILED = "transfer_failed"
    INVALID_RATING = "invalid_rating"
    INVALID_INPUT = "invalid_input"
    AUDIT_FAILURE = "audit_failure"


class MarketplaceError(Exception):
    """Base class for precondition violations."""

    reason: FailureReason = FailureReason.INVALID_INPUT


class AlreadyRegisteredError(MarketplaceError):
    reason = FailureReason.ALREADY_REGISTERED


class InvalidRoleError(MarketplaceError):
    reason = FailureReason.INVALID_ROLE


class NotFoundError(MarketplaceError):
    reason = FailureReason.NOT_FOUND


class UnauthorizedError(MarketplaceError):
    reason = FailureReason.UNAUTHORIZED


class InvalidStateError(MarketplaceError):
    reason = FailureReason.INVALID_STATE


class AlreadyAppliedError(MarketplaceError):
    reason = FailureReason.ALREADY_APPLIED


class BidExceedsPriceError(MarketplaceError):
    reason = FailureReason.BID_EXCEEDS_PRICE


class AlreadyReleasedError(MarketplaceError):
    reason = FailureReason.ALREADY_RELEASED


class InsufficientEscrowError(MarketplaceError):
    reason = FailureReason.INSUFFICIENT_ESCROW


class TransferFailedError(MarketplaceError):
    reason = FailureReason.TRANSFER_FAILED


class InvalidRatingError(MarketplaceError):
    reason = FailureReason.INVALID_RATING


class InvalidInputError(MarketplaceError):
    reason = FailureReason.INVALID_INPUT


class AuditFailureError(MarketplaceError):
    reason = FailureReason.AUDIT_FAILURE
