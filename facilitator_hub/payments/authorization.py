"""
ERC-3009 authorization codec
Builds TransferWithAuthorization messages, their EIP-712 typed data and wire form
"""

import base64
import binascii
import json
import re
import secrets
import time
from decimal import Decimal, InvalidOperation, localcontext
from typing import Any, Callable, Optional, Protocol, Tuple

from eth_account import Account
from eth_account.messages import encode_typed_data
from pydantic import ValidationError as PydanticValidationError
import structlog

from facilitator_hub.errors import InvalidAddress, InvalidAmount, InvalidSignature, ValidationError
from facilitator_hub.models import is_hex_address
from facilitator_hub.networks import NetworkRegistry
from facilitator_hub.payments.models import (
    UINT256_MAX,
    PaymentPayload,
    PaymentRequirements,
    SignedAuthorization,
    SupportedKind,
    TransferAuthorization,
)

logger = structlog.get_logger()

PRIMARY_TYPE = "TransferWithAuthorization"

EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

# Field order is part of the type hash; never reorder.
TRANSFER_WITH_AUTHORIZATION_TYPE = [
    {"name": "from", "type": "address"},
    {"name": "to", "type": "address"},
    {"name": "value", "type": "uint256"},
    {"name": "validAfter", "type": "uint256"},
    {"name": "validBefore", "type": "uint256"},
    {"name": "nonce", "type": "bytes32"},
]

_AMOUNT_PATTERN = re.compile(r"^\d+(\.\d+)?$")

X402_VERSION = 1


class TypedDataSigner(Protocol):
    """Wallet capability: sign EIP-712 typed data or raise UserDeclined"""

    async def sign_typed_data(self, typed_data: dict) -> str:
        ...


class LocalAccountSigner:
    """Signs with an in-process eth_account key (scripts, tests, server-side payers)"""

    def __init__(self, private_key: str):
        self.account = Account.from_key(private_key)
        self.address = self.account.address

    async def sign_typed_data(self, typed_data: dict) -> str:
        signed = self.account.sign_message(encode_typed_data(full_message=typed_data))
        return "0x" + bytes(signed.signature).hex()


def to_atomic_units(amount: str, decimals: int) -> int:
    """
    Convert a human decimal string ("2.50") to atomic units (2500000 for 6 decimals).
    Rejects anything that does not fit the token's precision exactly.
    """
    if not isinstance(amount, str) or not _AMOUNT_PATTERN.match(amount.strip()):
        raise InvalidAmount(f"Amount is not a plain decimal string: {amount!r}")

    with localcontext() as ctx:
        ctx.prec = 100
        try:
            value = Decimal(amount.strip())
        except InvalidOperation:
            raise InvalidAmount(f"Amount could not be parsed: {amount!r}")

        scaled = value.scaleb(decimals)
        if scaled != scaled.to_integral_value():
            raise InvalidAmount(
                f"Amount {amount} has more than {decimals} decimal places",
                details={"amount": amount, "decimals": decimals},
            )

    atomic = int(scaled)
    if atomic <= 0:
        raise InvalidAmount(f"Amount must be positive: {amount!r}")
    if atomic > UINT256_MAX:
        raise InvalidAmount(f"Amount overflows uint256: {amount!r}")
    return atomic


def generate_nonce() -> str:
    """Cryptographically random 32-byte authorization nonce"""
    return "0x" + secrets.token_hex(32)


def split_signature(signature: str) -> Tuple[int, bytes, bytes]:
    """
    Decompose a 65-byte r||s||v signature into (v, r, s).
    Some wallets return v as 0/1; the token contract expects 27/28.
    """
    raw = signature[2:] if signature.startswith("0x") else signature
    try:
        sig_bytes = bytes.fromhex(raw)
    except ValueError:
        raise InvalidSignature("Signature is not valid hex")
    if len(sig_bytes) != 65:
        raise InvalidSignature(f"Invalid signature length: {len(sig_bytes)}")

    r = sig_bytes[:32]
    s = sig_bytes[32:64]
    v = sig_bytes[64]
    if v < 27:
        v += 27
    if v not in (27, 28):
        raise InvalidSignature(f"Invalid signature recovery id: {sig_bytes[64]}")
    return v, r, s


class AuthorizationCodec:
    """
    Builds and serializes ERC-3009 authorizations per network.
    The typed data must match what the token contract hashes bit for bit,
    so the domain always comes from the registry descriptor.
    """

    def __init__(
        self,
        registry: NetworkRegistry,
        timeout_seconds: int = 300,
        clock_skew_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.timeout_seconds = timeout_seconds
        self.clock_skew_seconds = clock_skew_seconds
        self._clock = clock

    def build_authorization(
        self,
        from_address: str,
        to: str,
        amount: str,
        network_id: str,
    ) -> TransferAuthorization:
        """Create an unsigned authorization for `amount` whole tokens"""
        network = self.registry.resolve(network_id)

        for label, address in (("from", from_address), ("to", to)):
            if not is_hex_address(address):
                raise InvalidAddress(f"Invalid {label} address: {address!r}")

        value = to_atomic_units(amount, network.token_decimals)
        now = int(self._clock())

        return TransferAuthorization(
            from_address=from_address,
            to=to,
            value=value,
            valid_after=now - self.clock_skew_seconds,
            valid_before=now + self.timeout_seconds,
            nonce=generate_nonce(),
        )

    def typed_data_for(self, authorization: TransferAuthorization, network_id: str) -> dict:
        """EIP-712 structure an external wallet must hash and sign"""
        network = self.registry.resolve(network_id)
        return {
            "types": {
                "EIP712Domain": EIP712_DOMAIN_TYPE,
                PRIMARY_TYPE: TRANSFER_WITH_AUTHORIZATION_TYPE,
            },
            "primaryType": PRIMARY_TYPE,
            "domain": network.domain.as_dict(),
            "message": {
                "from": authorization.from_address,
                "to": authorization.to,
                "value": authorization.value,
                "validAfter": authorization.valid_after,
                "validBefore": authorization.valid_before,
                "nonce": authorization.nonce,
            },
        }

    async def sign(
        self,
        authorization: TransferAuthorization,
        network_id: str,
        signer: TypedDataSigner,
    ) -> SignedAuthorization:
        """Ask a wallet to sign; UserDeclined from the signer propagates unchanged"""
        typed_data = self.typed_data_for(authorization, network_id)
        signature = await signer.sign_typed_data(typed_data)
        signed = SignedAuthorization(authorization=authorization, signature=signature)
        logger.info(
            "authorization_signed",
            network=network_id,
            from_address=authorization.from_address,
            to=authorization.to,
            value=authorization.value,
        )
        return signed

    @staticmethod
    def to_wire_form(signed: SignedAuthorization) -> dict:
        """
        JSON-safe form: uint256 fields become decimal strings so no consumer
        ever truncates them to a float.
        """
        wire: dict[str, Any] = {
            "signature": signed.signature,
            "authorization": AuthorizationCodec.authorization_wire_form(signed.authorization),
        }
        if signed.domain is not None:
            wire["domain"] = signed.domain
        return wire

    @staticmethod
    def authorization_wire_form(auth: TransferAuthorization) -> dict:
        return {
            "from": auth.from_address,
            "to": auth.to,
            "value": str(auth.value),
            "validAfter": str(auth.valid_after),
            "validBefore": str(auth.valid_before),
            "nonce": auth.nonce,
        }

    @staticmethod
    def from_wire_form(data: dict) -> SignedAuthorization:
        """Parse the wire form back into native integers"""
        try:
            return SignedAuthorization.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(
                "Malformed signed authorization",
                details={"errors": e.errors(include_url=False, include_context=False)},
            )

    def to_x402_payload(self, signed: SignedAuthorization, network_id: str) -> PaymentPayload:
        """Wrap a signed authorization in an x402 `exact` payment payload"""
        self.registry.resolve(network_id)
        wire = self.to_wire_form(signed)
        return PaymentPayload(
            x402Version=X402_VERSION,
            scheme="exact",
            network=network_id,
            payload={
                "signature": wire["signature"],
                "authorization": wire["authorization"],
            },
        )

    def create_payment_requirements(
        self,
        amount: str,
        pay_to: str,
        network_id: str,
        resource: str,
        description: Optional[str] = None,
    ) -> PaymentRequirements:
        """402 response body asking for `amount` whole tokens on a network"""
        network = self.registry.resolve(network_id)
        if not is_hex_address(pay_to):
            raise InvalidAddress(f"Invalid payTo address: {pay_to!r}")
        return PaymentRequirements(
            network=network.network_id,
            resource=resource,
            max_amount_required=str(to_atomic_units(amount, network.token_decimals)),
            pay_to=pay_to,
            asset=network.token_address,
            max_timeout_seconds=self.timeout_seconds,
            description=description,
        )

    def supported_kinds(self) -> list[SupportedKind]:
        """One `exact` kind per registered network"""
        return [SupportedKind(x402Version=X402_VERSION, network=network.network_id) for network in self.registry]

    @staticmethod
    def encode_payment_header(payload: PaymentPayload) -> str:
        """Base64 JSON for the X-PAYMENT request header"""
        return base64.b64encode(payload.model_dump_json().encode("utf-8")).decode("ascii")

    @staticmethod
    def decode_payment_header(header: str) -> PaymentPayload:
        try:
            data = json.loads(base64.b64decode(header, validate=True).decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            raise ValidationError("X-PAYMENT header is not base64-encoded JSON")
        try:
            return PaymentPayload.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(
                "Malformed X-PAYMENT payload",
                details={"errors": e.errors(include_url=False, include_context=False)},
            )

    def recover_signer(self, signed: SignedAuthorization, network_id: str) -> str:
        """Address that produced the signature under this network's domain"""
        typed_data = self.typed_data_for(signed.authorization, network_id)
        encoded = encode_typed_data(full_message=typed_data)
        return Account.recover_message(encoded, signature=signed.signature)

    def verify_signature(
        self,
        signed: SignedAuthorization,
        network_id: str,
        expected_signer: Optional[str] = None,
    ) -> bool:
        """True if the signature recovers to `from` (or `expected_signer`)"""
        expected = (expected_signer or signed.authorization.from_address).lower()
        try:
            recovered = self.recover_signer(signed, network_id)
        except Exception as e:
            logger.warning("authorization_recover_failed", error=str(e), network=network_id)
            return False
        return recovered.lower() == expected
