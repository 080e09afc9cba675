"""
Canonical messages that clients sign (EIP-191 personal messages).

Formats mirror the EVVM ledger's on-chain verifier:

    {evvmID},pay,{recipient},{token},{amount},{priorityFee},{nonce},{priorityFlag},{executor}
    {evvmID},dispersePay,{hashList},{token},{amount},{priorityFee},{nonce},{priorityFlag},{executor}
    {evvmID},claimPyusd,{claimer},{nonce}
    {evvmID},claimMate,{claimer},{nonce}

IMPORTANT: any change to field order, casing or the recipient hash breaks
every signature already issued. Keep in lockstep with the ledger contracts.
"""

import hashlib
from typing import Optional, Sequence

import structlog
from eth_abi import encode
from web3 import Web3

from .models import (
    ZERO_ADDRESS,
    Authorization,
    DispersePayload,
    FaucetPayload,
    NonceMode,
    OperationKind,
    Payload,
    PayPayload,
    Recipient,
)

logger = structlog.get_logger()

RECIPIENTS_ABI_TYPE = "(uint256,address,string)[]"


def normalize_address(address: str) -> str:
    """
    Normalize an address the way the ledger renders it in messages.

    Used for both the signed text and the submitted call arguments, so the
    two can never disagree on casing.
    """
    return address.strip().lower()


def to_call_address(address: str) -> str:
    """Checksummed form of `normalize_address` for web3 contract arguments."""
    return Web3.to_checksum_address(normalize_address(address))


def format_bool(value: bool) -> str:
    return "true" if value else "false"


def encode_recipients(recipients: Sequence[Recipient]) -> bytes:
    """ABI-encode a batch exactly like Solidity's abi.encode(toData)."""
    tuples = [
        (r.amount, normalize_address(r.to_address), r.to_identity or "")
        for r in recipients
    ]
    return encode([RECIPIENTS_ABI_TYPE], [tuples])


def hash_recipients(recipients: Sequence[Recipient]) -> Optional[str]:
    """sha256 over the ABI-encoded batch as 0x-prefixed hex, or None if unencodable."""
    try:
        encoded = encode_recipients(recipients)
    except Exception as e:
        logger.warning("recipients_encoding_failed", error=str(e))
        return None
    return "0x" + hashlib.sha256(encoded).hexdigest()


def pay_message(
    domain_id: int,
    payload: PayPayload,
    fee: int,
    nonce: int,
    priority_flag: bool,
    executor: str,
) -> str:
    recipient = normalize_address(payload.to_address)
    if recipient == ZERO_ADDRESS and payload.to_identity:
        recipient = payload.to_identity
    return (
        f"{domain_id},pay,{recipient},{normalize_address(payload.token)},"
        f"{payload.amount},{fee},{nonce},{format_bool(priority_flag)},"
        f"{normalize_address(executor)}"
    )


def disperse_pay_message(
    domain_id: int,
    payload: DispersePayload,
    fee: int,
    nonce: int,
    priority_flag: bool,
    executor: str,
) -> Optional[str]:
    hash_list = hash_recipients(payload.recipients)
    if hash_list is None:
        return None
    return (
        f"{domain_id},dispersePay,{hash_list},{normalize_address(payload.token)},"
        f"{payload.amount},{fee},{nonce},{format_bool(priority_flag)},"
        f"{normalize_address(executor)}"
    )


def faucet_claim_message(
    domain_id: int, payload: FaucetPayload, claimer: str, nonce: int
) -> str:
    return f"{domain_id},{payload.faucet.function_name},{normalize_address(claimer)},{nonce}"


def canonicalize(
    domain_id: int,
    operation: OperationKind,
    payload: Payload,
    fee: int,
    nonce: int,
    nonce_mode: NonceMode,
    executor: str,
    sender: str,
) -> Optional[str]:
    """
    Build the exact text a sender signs for an operation.

    Deterministic and side-effect free. Returns None instead of raising when
    the inputs cannot be rendered (mismatched payload, unencodable batch).
    """
    try:
        if operation is OperationKind.PAY and isinstance(payload, PayPayload):
            return pay_message(
                domain_id, payload, fee, nonce, nonce_mode.priority_flag, executor
            )
        if operation is OperationKind.DISPERSE_PAY and isinstance(payload, DispersePayload):
            return disperse_pay_message(
                domain_id, payload, fee, nonce, nonce_mode.priority_flag, executor
            )
        if operation is OperationKind.CLAIM_FAUCET and isinstance(payload, FaucetPayload):
            return faucet_claim_message(domain_id, payload, sender, nonce)
    except (AttributeError, TypeError, ValueError) as e:
        logger.warning("canonicalize_failed", operation=operation.value, error=str(e))
        return None

    logger.warning(
        "canonicalize_payload_mismatch",
        operation=operation.value,
        payload_type=type(payload).__name__,
    )
    return None


def canonical_message(domain_id: int, auth: Authorization) -> Optional[str]:
    """Canonical message for a complete authorization."""
    return canonicalize(
        domain_id,
        auth.operation,
        auth.payload,
        auth.priority_fee,
        auth.nonce,
        auth.nonce_mode,
        auth.executor,
        auth.sender,
    )
