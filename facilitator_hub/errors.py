"""
Error taxonomy for Facilitator Hub
Every failure carries a stable code, structured details and a retryable flag
"""

from typing import Any, List, Optional


class HubError(Exception):
    """Base exception for Facilitator Hub"""

    code = "HUB_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Convert error to a JSON-safe dictionary"""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "retryable": self.retryable,
                "details": self.details,
            }
        }


# ===== VALIDATION =====

class ValidationError(HubError):
    """Input rejected before any I/O"""
    code = "VALIDATION_ERROR"


class InvalidAmount(ValidationError):
    code = "INVALID_AMOUNT"


class InvalidAddress(ValidationError):
    code = "INVALID_ADDRESS"


class InvalidSignature(ValidationError):
    code = "INVALID_SIGNATURE"


class NetworkMismatch(ValidationError):
    """Request targets a network the facilitator is not bound to"""
    code = "NETWORK_MISMATCH"


class PaymentProofRejected(ValidationError):
    code = "PAYMENT_PROOF_REJECTED"


# ===== RESOLUTION =====

class UnknownNetwork(HubError):
    code = "UNKNOWN_NETWORK"

    def __init__(self, network_id: str):
        super().__init__(
            f"Unsupported network: {network_id}",
            details={"network": network_id},
        )
        self.network_id = network_id


class FacilitatorNotFound(HubError):
    code = "FACILITATOR_NOT_FOUND"

    def __init__(self, facilitator_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"Facilitator {facilitator_id} not found",
            details={"facilitator_id": facilitator_id},
        )
        self.facilitator_id = facilitator_id


class Unauthorized(HubError):
    """Caller is not allowed to mutate the record"""
    code = "UNAUTHORIZED"


class ConfigurationError(HubError):
    """Deployment is missing something the operation needs (master secret, RPC)"""
    code = "CONFIGURATION_ERROR"


# ===== CRYPTOGRAPHY =====

class DecryptionFailed(HubError):
    """
    Stored key material could not be decrypted.
    Indicates misconfiguration (wrong master secret, corrupted record), never transient.
    """
    code = "DECRYPTION_FAILED"


# ===== CHAIN =====

class SettlementFailed(HubError):
    """
    Terminal per-authorization failure (revert, consumed nonce, expired window).
    Retrying requires the payer to sign a fresh authorization.
    """
    code = "SETTLEMENT_FAILED"

    def __init__(
        self,
        reason: str,
        stage: Optional[str] = None,
        tx_hash: Optional[str] = None,
        completed_tx_hashes: Optional[List[str]] = None,
    ):
        super().__init__(
            f"Settlement failed: {reason}",
            details={
                "reason": reason,
                "stage": stage,
                "tx_hash": tx_hash,
                "completed_tx_hashes": list(completed_tx_hashes or []),
            },
        )
        self.reason = reason
        self.stage = stage
        self.tx_hash = tx_hash
        self.completed_tx_hashes = list(completed_tx_hashes or [])


class ChainUnavailable(HubError):
    """RPC endpoint unreachable or returned a transport-level error"""
    code = "CHAIN_UNAVAILABLE"
    retryable = True


class ConfirmationTimeout(HubError):
    """
    Transaction was submitted but no receipt arrived in time.
    The transaction may still land: callers must re-query, never assume reversal.
    """
    code = "CONFIRMATION_TIMEOUT"

    def __init__(self, tx_hash: str, timeout: float, completed_tx_hashes: Optional[List[str]] = None):
        super().__init__(
            f"No receipt for {tx_hash} after {timeout:g}s",
            details={
                "tx_hash": tx_hash,
                "timeout": timeout,
                "completed_tx_hashes": list(completed_tx_hashes or []),
            },
        )
        self.tx_hash = tx_hash
        self.timeout = timeout
        self.completed_tx_hashes = list(completed_tx_hashes or [])


class SubmissionUnknown(HubError):
    """
    The node connection failed while the signed transaction was being sent.
    It may have been broadcast anyway: callers must query tx_hash, never resend blindly.
    """
    code = "SUBMISSION_UNKNOWN"

    def __init__(self, tx_hash: str, reason: str, completed_tx_hashes: Optional[List[str]] = None):
        super().__init__(
            f"Broadcast of {tx_hash} unconfirmed: {reason}",
            details={
                "tx_hash": tx_hash,
                "reason": reason,
                "completed_tx_hashes": list(completed_tx_hashes or []),
            },
        )
        self.tx_hash = tx_hash
        self.reason = reason
        self.completed_tx_hashes = list(completed_tx_hashes or [])


class UserDeclined(HubError):
    """Wallet owner rejected the signing prompt"""
    code = "USER_DECLINED"
