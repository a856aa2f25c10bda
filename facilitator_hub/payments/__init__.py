"""
x402 / ERC-3009 payments for Facilitator Hub
"""

from facilitator_hub.payments.authorization import (
    AuthorizationCodec,
    LocalAccountSigner,
    TypedDataSigner,
    split_signature,
    to_atomic_units,
)
from facilitator_hub.payments.models import (
    BatchSettlementResult,
    PaymentPayload,
    PaymentRequirements,
    SettlementResult,
    SignedAuthorization,
    TransferAuthorization,
)

__all__ = [
    "AuthorizationCodec",
    "LocalAccountSigner",
    "TypedDataSigner",
    "split_signature",
    "to_atomic_units",
    "BatchSettlementResult",
    "PaymentPayload",
    "PaymentRequirements",
    "SettlementResult",
    "SignedAuthorization",
    "TransferAuthorization",
]
