"""Import fingerprints used to recognise a transaction that is already stored."""

from datetime import date
from decimal import Decimal
import hashlib

from ..models.transaction import normalize_reference, quantize_amount


def compute_fingerprint(
    account_id: int, txn_date: date, amount: Decimal, payment_ref: str
) -> str:
    """
    Hash the identity of a transaction within an account.

    Two records with the same account, day, amount (to the cent) and payment
    reference (ignoring case and punctuation) share a fingerprint.

    Returns:
        Hex sha256 digest
    """
    key = "|".join(
        [
            str(account_id),
            txn_date.isoformat(),
            f"{quantize_amount(amount):.2f}",
            normalize_reference(payment_ref),
        ]
    )
    return hashlib.sha256(key.encode("utf-8")).hexdigest()
