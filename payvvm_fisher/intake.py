"""
Parsing of client submissions into Authorizations.

Request bodies use the wallet-facing field names (`from`, `priorityFee`,
`priorityFlag`, ...). Only structure is checked here: anything missing or
unparseable is rejected as malformed and never reaches the pool. Signature,
nonce and balance checks happen at execution time.
"""

from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from web3 import Web3

from .models import (
    ZERO_ADDRESS,
    Authorization,
    DispersePayload,
    FaucetKind,
    FaucetPayload,
    NonceMode,
    OperationKind,
    PayPayload,
    Recipient,
)

UINT256_MAX = 2**256 - 1
# r, s, v of a secp256k1 signature
MAX_SIGNATURE_BYTES = 65
MAX_IDENTITY_LENGTH = 256


class MalformedAuthorization(Exception):
    """Submission is missing fields or has fields that cannot be parsed."""

    reason = "malformed_authorization"

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)


def parse_uint(value: Any) -> int:
    """Accept a JSON integer or a decimal string within uint256."""
    # bool is an int subclass; "true" is never a valid amount
    if isinstance(value, bool):
        raise ValueError("expected an unsigned integer, got a boolean")
    if isinstance(value, int):
        number = value
    elif isinstance(value, str) and value.strip().isdigit():
        number = int(value.strip())
    else:
        raise ValueError(f"expected an unsigned integer, got {value!r}")
    if number < 0 or number > UINT256_MAX:
        raise ValueError(f"{number} is outside the uint256 range")
    return number


def check_address(value: str) -> str:
    value = value.strip()
    if not Web3.is_address(value):
        raise ValueError(f"invalid EVM address: {value!r}")
    return value


def check_signature(value: str) -> str:
    value = value.strip()
    body = value[2:] if value[:2].lower() == "0x" else ""
    if not body or len(body) % 2:
        raise ValueError("signature must be 0x-prefixed hex")
    if len(body) > 2 * MAX_SIGNATURE_BYTES:
        raise ValueError(f"signature is longer than {MAX_SIGNATURE_BYTES} bytes")
    try:
        bytes.fromhex(body)
    except ValueError:
        raise ValueError("signature must be 0x-prefixed hex") from None
    return value


class _Submission(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class _SignedTransfer(_Submission):
    """Fields shared by pay and dispersePay."""

    sender: str = Field(..., alias="from", description="Signer of the authorization")
    token: str
    amount: int
    priority_fee: int = Field(..., alias="priorityFee")
    nonce: int
    priority_flag: bool = Field(..., alias="priorityFlag", description="true = unique nonce")
    executor: str = Field(ZERO_ADDRESS, description="Only this fisher may execute (zero = any)")
    signature: str

    @field_validator("amount", "priority_fee", "nonce", mode="before")
    @classmethod
    def validate_uint(cls, v: Any) -> int:
        return parse_uint(v)

    @field_validator("sender", "token", "executor")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return check_address(v)

    @field_validator("signature")
    @classmethod
    def validate_signature(cls, v: str) -> str:
        return check_signature(v)


class PayRequest(_SignedTransfer):
    """Single transfer."""

    to: str
    to_identity: str = Field("", max_length=MAX_IDENTITY_LENGTH)

    @field_validator("to")
    @classmethod
    def validate_recipient(cls, v: str) -> str:
        return check_address(v)


class RecipientRequest(_Submission):
    amount: int
    to_address: str
    to_identity: str = Field("", max_length=MAX_IDENTITY_LENGTH)

    @field_validator("amount", mode="before")
    @classmethod
    def validate_amount(cls, v: Any) -> int:
        return parse_uint(v)

    @field_validator("to_address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return check_address(v)


class DisperseRequest(_SignedTransfer):
    """Batch transfer to several recipients under one signature."""

    recipients: list[RecipientRequest] = Field(..., min_length=1)


class ClaimRequest(_Submission):
    """Faucet claim."""

    claimer: str
    nonce: int
    signature: str

    @field_validator("nonce", mode="before")
    @classmethod
    def validate_nonce(cls, v: Any) -> int:
        return parse_uint(v)

    @field_validator("claimer")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return check_address(v)

    @field_validator("signature")
    @classmethod
    def validate_signature(cls, v: str) -> str:
        return check_signature(v)


def _describe(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "body"
        parts.append(f"{location}: {item['msg']}")
    return "; ".join(parts)


def _validate(model: type[_Submission], body: Any) -> Any:
    if not isinstance(body, dict):
        raise MalformedAuthorization("request body must be a JSON object")
    try:
        return model.model_validate(body)
    except ValidationError as e:
        raise MalformedAuthorization(_describe(e)) from e


def parse_pay(body: Any) -> Authorization:
    request: PayRequest = _validate(PayRequest, body)
    return Authorization(
        operation=OperationKind.PAY,
        sender=request.sender,
        payload=PayPayload(
            to_address=request.to,
            to_identity=request.to_identity,
            token=request.token,
            amount=request.amount,
        ),
        nonce=request.nonce,
        nonce_mode=NonceMode.from_priority_flag(request.priority_flag),
        signature=request.signature,
        priority_fee=request.priority_fee,
        executor=request.executor,
    )


def parse_disperse(body: Any) -> Authorization:
    """
    Parse a batch transfer.

    A declared total that differs from the recipient sum is NOT rejected
    here; it is stored and fails with batch_sum_mismatch when executed.
    """
    request: DisperseRequest = _validate(DisperseRequest, body)
    return Authorization(
        operation=OperationKind.DISPERSE_PAY,
        sender=request.sender,
        payload=DispersePayload(
            recipients=tuple(
                Recipient(
                    amount=r.amount,
                    to_address=r.to_address,
                    to_identity=r.to_identity,
                )
                for r in request.recipients
            ),
            token=request.token,
            amount=request.amount,
        ),
        nonce=request.nonce,
        nonce_mode=NonceMode.from_priority_flag(request.priority_flag),
        signature=request.signature,
        priority_fee=request.priority_fee,
        executor=request.executor,
    )


def parse_claim(body: Any, faucet: Union[FaucetKind, str]) -> Authorization:
    """Faucet claims carry no fee and use the faucet's unique nonces."""
    request: ClaimRequest = _validate(ClaimRequest, body)
    return Authorization(
        operation=OperationKind.CLAIM_FAUCET,
        sender=request.claimer,
        payload=FaucetPayload(faucet=FaucetKind(faucet)),
        nonce=request.nonce,
        nonce_mode=NonceMode.UNIQUE,
        signature=request.signature,
    )
