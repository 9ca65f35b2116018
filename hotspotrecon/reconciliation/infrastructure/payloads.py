"""Adapters from M-Pesa callback payloads to provider payment records.

The webhook collaborator receives two payload shapes and hands them over
untouched. Both are translated here into ``ProviderPaymentRecord``; amount and
phone validation is left to the normalizer.

C2B confirmation::

    {"TransID": "RKTQDM7W6S", "TransAmount": "500.00", "MSISDN": "254712345678",
     "BillRefNumber": "VOUCHER", "TransTime": "20240115143000", ...}

STK push callback::

    {"Body": {"stkCallback": {"ResultCode": 0, "CallbackMetadata": {"Item": [
        {"Name": "Amount", "Value": 500},
        {"Name": "MpesaReceiptNumber", "Value": "RKTQDM7W6S"},
        {"Name": "TransactionDate", "Value": 20240115143000},
        {"Name": "PhoneNumber", "Value": 254712345678}]}}}}
"""

from datetime import datetime, timedelta, timezone
from typing import Any

from ...exceptions import PayloadFormatError
from ..domain.value_objects import ProviderPaymentRecord

# M-Pesa timestamps are East Africa Time without an offset.
EAT = timezone(timedelta(hours=3), "EAT")
MPESA_TIME_FORMAT = "%Y%m%d%H%M%S"


def parse_mpesa_timestamp(value: Any) -> datetime:
    """Parse ``YYYYMMDDHHMMSS`` (str or int) as an aware EAT datetime."""
    try:
        return datetime.strptime(str(value).strip(), MPESA_TIME_FORMAT).replace(tzinfo=EAT)
    except ValueError as e:
        raise PayloadFormatError(
            f"Invalid M-Pesa timestamp: {value!r}", context={"value": str(value)}, original_error=e
        ) from e


def _require(payload: dict[str, Any], key: str) -> Any:
    if key not in payload or payload[key] in (None, ""):
        raise PayloadFormatError(f"Missing field {key!r} in payment payload", context={"field": key})
    return payload[key]


def from_c2b_confirmation(merchant_id: str, payload: dict[str, Any]) -> ProviderPaymentRecord:
    """Translate a C2B confirmation callback.

    Raises:
        PayloadFormatError: If the receipt or timestamp is missing or malformed
    """
    return ProviderPaymentRecord(
        merchant_id=merchant_id,
        receipt=str(_require(payload, "TransID")),
        amount=payload.get("TransAmount"),
        phone=payload.get("MSISDN"),
        reference=str(payload.get("BillRefNumber") or ""),
        confirmed_at=parse_mpesa_timestamp(_require(payload, "TransTime")),
        raw=payload,
    )


def from_stk_callback(
    merchant_id: str,
    payload: dict[str, Any],
    account_reference: str = "",
) -> ProviderPaymentRecord | None:
    """Translate an STK push result callback.

    STK callbacks do not echo the account reference, so the caller passes
    the one it used when initiating the push.

    Returns:
        The payment record, or None when ``ResultCode`` reports no payment
        (cancelled by the user, timeout, insufficient funds)

    Raises:
        PayloadFormatError: If the payload does not have the STK callback shape
    """
    try:
        callback = payload["Body"]["stkCallback"]
    except (KeyError, TypeError) as e:
        raise PayloadFormatError("Not an STK callback payload", original_error=e) from e

    if int(callback.get("ResultCode", -1)) != 0:
        return None

    items = (callback.get("CallbackMetadata") or {}).get("Item") or []
    metadata = {item.get("Name"): item.get("Value") for item in items if isinstance(item, dict)}

    return ProviderPaymentRecord(
        merchant_id=merchant_id,
        receipt=str(_require(metadata, "MpesaReceiptNumber")),
        amount=metadata.get("Amount"),
        phone=metadata.get("PhoneNumber"),
        reference=account_reference,
        confirmed_at=parse_mpesa_timestamp(_require(metadata, "TransactionDate")),
        raw=payload,
    )


def from_payload(merchant_id: str, payload: dict[str, Any]) -> ProviderPaymentRecord | None:
    """Detect the payload shape and translate it."""
    if "Body" in payload:
        return from_stk_callback(merchant_id, payload)
    if "TransID" in payload:
        return from_c2b_confirmation(merchant_id, payload)
    raise PayloadFormatError("Unrecognized payment payload", context={"keys": sorted(payload)[:10]})
