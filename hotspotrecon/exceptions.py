"""Exception hierarchy for hotspotrecon.

Every error carries a human-readable message plus a ``context`` dict that is
rendered into ``str(error)`` and can be passed straight to structured logging.

Usage:
    from hotspotrecon.exceptions import StaleStateTransition

    try:
        ledger.approve(provider_id, system_id, operator="alice")
    except StaleStateTransition as e:
        logger.warning("approve_lost_race", **e.context)
"""

from __future__ import annotations

from typing import Any


class HotspotReconError(Exception):
    """Base exception for all hotspotrecon errors.

    Attributes:
        message: Human-readable error message
        context: Additional context for debugging (dict)
        original_error: Original exception if wrapped
    """

    #: Stable machine-readable code, recorded against transactions.
    code: str = "error"

    def __init__(
        self,
        message: str,
        *,
        context: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.original_error = original_error

    def __str__(self) -> str:
        base = self.message
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base = f"{base} ({ctx_str})"
        if self.original_error:
            base = f"{base} [caused by: {type(self.original_error).__name__}]"
        return base

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, context={self.context!r})"

    def as_issue(self) -> dict[str, Any]:
        """Serializable form stored in ``Transaction.issues``."""
        return {"code": self.code, "message": self.message, **self.context}


# =============================================================================
# Validation & Input Errors
# =============================================================================


class ValidationError(HotspotReconError):
    """Raised when input validation fails."""

    code = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        if field:
            context["field"] = field
        if value is not None:
            context["value"] = str(value)[:100]
        kwargs["context"] = context
        super().__init__(message, **kwargs)


class ConfigurationError(HotspotReconError):
    """Raised when application configuration is invalid or missing."""

    code = "configuration_error"


class NormalizationError(ValidationError):
    """Raised when a raw record field cannot be canonicalized.

    Non-fatal during ingestion: the offending field is nulled, the record is
    kept and the error is recorded on the transaction.
    """

    code = "normalization_error"


class InvalidPhoneFormat(NormalizationError):
    """Phone number is not a Kenyan mobile number (2547XXXXXXXX)."""

    code = "invalid_phone_format"

    def __init__(self, value: Any, **kwargs: Any) -> None:
        super().__init__(f"Invalid phone number format: {value!r}", field="phone", value=value, **kwargs)


class InvalidAmount(NormalizationError):
    """Amount is missing, non-numeric, non-finite or not positive."""

    code = "invalid_amount"

    def __init__(self, value: Any, reason: str = "must be a positive finite number", **kwargs: Any) -> None:
        super().__init__(f"Invalid amount {value!r}: {reason}", field="amount", value=value, **kwargs)


# =============================================================================
# Database & Persistence Errors
# =============================================================================


class DatabaseError(HotspotReconError):
    """Base class for database-related errors."""

    code = "database_error"


class RecordNotFoundError(DatabaseError):
    """Raised when a database record is not found."""

    code = "not_found"

    def __init__(
        self,
        message: str,
        *,
        entity_type: str | None = None,
        entity_id: int | str | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        if entity_type:
            context["entity_type"] = entity_type
        if entity_id is not None:
            context["entity_id"] = str(entity_id)
        kwargs["context"] = context
        super().__init__(message, **kwargs)


# =============================================================================
# Business Logic Errors
# =============================================================================


class BusinessLogicError(HotspotReconError):
    """Base class for business rule violations."""

    code = "business_rule"


class ReconciliationError(BusinessLogicError):
    """Base class for reconciliation ledger errors."""

    code = "reconciliation_error"


class AmbiguousMatch(ReconciliationError):
    """More than one equally-ranked candidate exists for a transaction.

    Surfaced for manual review instead of being auto-resolved.
    """

    code = "ambiguous_match"

    def __init__(self, transaction_id: int, competing_ids: list[int], **kwargs: Any) -> None:
        context = kwargs.pop("context", {})
        context["transaction_id"] = transaction_id
        context["competing_ids"] = sorted(competing_ids)
        super().__init__(
            f"Transaction {transaction_id} has equally-ranked candidates", context=context, **kwargs
        )


class StaleStateTransition(ReconciliationError):
    """Compare-and-swap rejection on a ledger transition.

    The caller must re-read current state and retry or abort; the transition
    is never applied over a concurrent change.
    """

    code = "stale_state_transition"

    def __init__(
        self,
        transaction_id: int,
        *,
        expected_state: str | None = None,
        expected_version: int | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.pop("context", {})
        context["transaction_id"] = transaction_id
        if expected_state is not None:
            context["expected_state"] = expected_state
        if expected_version is not None:
            context["expected_version"] = expected_version
        super().__init__(
            f"Transaction {transaction_id} changed concurrently", context=context, **kwargs
        )


class TransactionAlreadyMatched(ReconciliationError):
    """The transaction is paired with a different counterpart."""

    code = "already_matched"

    def __init__(self, transaction_id: int, counterpart_id: int | None, state: str, **kwargs: Any) -> None:
        context = kwargs.pop("context", {})
        context.update(transaction_id=transaction_id, counterpart_id=counterpart_id, state=state)
        super().__init__(
            f"Transaction {transaction_id} is already {state}", context=context, **kwargs
        )


class PayoutError(BusinessLogicError):
    """Base class for payout errors."""

    code = "payout_error"


class BelowPayoutThreshold(PayoutError):
    """Withdrawable balance is below the merchant's minimum payout threshold."""

    code = "below_payout_threshold"


class InsufficientBalance(PayoutError):
    """Requested payout exceeds the available (withdrawable minus pending) balance."""

    code = "insufficient_balance"


class PayoutDestinationMissing(PayoutError):
    """The payout method has no configured destination."""

    code = "payout_destination_missing"


class DuplicateDisbursementConfirmation(PayoutError):
    """A disbursement confirmation arrived for an already settled payout."""

    code = "duplicate_disbursement_confirmation"


# =============================================================================
# External Integration Errors
# =============================================================================


class IntegrationError(HotspotReconError):
    """Base class for external collaborator errors (plan source, payment rail)."""

    code = "integration_error"


class PayloadFormatError(IntegrationError):
    """Raised when a provider or order payload has an unexpected shape."""

    code = "payload_format"


# =============================================================================
# Utility Functions
# =============================================================================


def wrap_exception(
    error: Exception,
    message: str,
    *,
    exception_class: type[HotspotReconError] = HotspotReconError,
    **context: Any,
) -> HotspotReconError:
    """Wrap an external exception in the hotspotrecon hierarchy.

    Example:
        try:
            session.commit()
        except IntegrityError as e:
            raise wrap_exception(e, "Duplicate receipt", exception_class=DatabaseError)
    """
    return exception_class(message, context=context, original_error=error)


__all__ = [
    "HotspotReconError",
    "ValidationError",
    "ConfigurationError",
    "NormalizationError",
    "InvalidPhoneFormat",
    "InvalidAmount",
    "DatabaseError",
    "RecordNotFoundError",
    "BusinessLogicError",
    "ReconciliationError",
    "AmbiguousMatch",
    "StaleStateTransition",
    "TransactionAlreadyMatched",
    "PayoutError",
    "BelowPayoutThreshold",
    "InsufficientBalance",
    "PayoutDestinationMissing",
    "DuplicateDisbursementConfirmation",
    "IntegrationError",
    "PayloadFormatError",
    "wrap_exception",
]
