"""
bidtab/errors.py

Error taxonomy for tabulation, leveling and award operations.

- NotFound            referenced RFP / bid / budget item does not exist
- PreconditionFailed  business rule blocks the operation (carries `rule` + details)
- ValidationError     malformed request payload
- TransientError      contention / aborted transaction, safe to retry from scratch
- TransactionTimeout  unit of work exceeded its time bound (a TransientError)

Unit conversion failures are NOT errors: they downgrade to a discrepancy flag.
Notification failures are logged only.

The app factory registers a handler that renders any BiddingError as JSON.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class BiddingError(Exception):
    """Base class; subclasses set `code` and `status_code`."""

    code = "BIDDING_ERROR"
    status_code = 400
    retryable = False

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class NotFound(BiddingError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, entity: str, entity_id: Any, message: Optional[str] = None):
        super().__init__(
            message or f"{entity} {entity_id} not found",
            details={"entity": entity, "id": entity_id},
        )
        self.entity = entity
        self.entity_id = entity_id


class PreconditionFailed(BiddingError):
    code = "PRECONDITION_FAILED"
    status_code = 409

    # Rules (award preconditions are numbered 1-5 in that order)
    BID_NOT_SUBMITTED = "BID_NOT_SUBMITTED"
    RFP_ALREADY_AWARDED = "RFP_ALREADY_AWARDED"
    AWARD_AMOUNT_OUT_OF_TOLERANCE = "AWARD_AMOUNT_OUT_OF_TOLERANCE"
    ALLOCATION_MISMATCH = "ALLOCATION_MISMATCH"
    INSUFFICIENT_BUDGET = "INSUFFICIENT_BUDGET"
    # Tabulation / bid lifecycle rules
    TABULATION_NOT_OPEN = "TABULATION_NOT_OPEN"
    NO_SUBMITTED_BIDS = "NO_SUBMITTED_BIDS"
    BID_NOT_IN_RFP = "BID_NOT_IN_RFP"
    RFP_NOT_DRAFT = "RFP_NOT_DRAFT"
    RFP_NOT_PUBLISHED = "RFP_NOT_PUBLISHED"
    RFP_DUE_DATE_PASSED = "RFP_DUE_DATE_PASSED"
    BID_NOT_DRAFT = "BID_NOT_DRAFT"
    BID_NOT_WITHDRAWABLE = "BID_NOT_WITHDRAWABLE"

    AWARD_RULE_NUMBERS = {
        BID_NOT_SUBMITTED: 1,
        RFP_ALREADY_AWARDED: 2,
        AWARD_AMOUNT_OUT_OF_TOLERANCE: 3,
        ALLOCATION_MISMATCH: 4,
        INSUFFICIENT_BUDGET: 5,
    }

    def __init__(
        self,
        rule: str,
        message: str,
        *,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, details=details)
        self.rule = rule
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["rule"] = self.rule
        number = self.AWARD_RULE_NUMBERS.get(self.rule)
        if number is not None:
            payload["precondition"] = number
        return payload


class ValidationError(BiddingError):
    code = "VALIDATION_ERROR"
    status_code = 400


class TransientError(BiddingError):
    code = "TRANSIENT"
    status_code = 503
    retryable = True


class TransactionTimeout(TransientError):
    code = "TIMEOUT"
