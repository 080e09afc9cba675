"""
EIP-191 personal-message signing and signer recovery.
"""

from typing import Optional, Union

from eth_account import Account
from eth_account.messages import encode_defunct
import structlog

logger = structlog.get_logger()


def normalize_signature(signature: Union[str, bytes]) -> str:
    """
    Render a signature as 0x-prefixed lowercase hex.

    This is the pool's dedup key, so two spellings of the same bytes must
    collapse to one value.
    """
    if isinstance(signature, (bytes, bytearray)):
        return "0x" + bytes(signature).hex()
    value = signature.strip().lower()
    if not value.startswith("0x"):
        value = "0x" + value
    return value


def sign_message(message: str, private_key: str) -> str:
    """
    Sign a canonical message the way wallets do (personal_sign).

    Returns:
        65-byte signature (r || s || v) as 0x hex
    """
    account = Account.from_key(private_key)
    signed = account.sign_message(encode_defunct(text=message))
    return normalize_signature(bytes(signed.signature))


def recover_signer(message: str, signature: Union[str, bytes]) -> Optional[str]:
    """Recover the address that signed `message`, or None when recovery fails."""
    try:
        return Account.recover_message(encode_defunct(text=message), signature=signature)
    except Exception as e:
        logger.debug("signature_recovery_failed", error=str(e))
        return None


def verify_signature(
    message: str, signature: Union[str, bytes], claimed_sender: str
) -> bool:
    """
    Check that `signature` over `message` recovers to `claimed_sender`.

    Fails closed: malformed hex, wrong length or an unrecoverable signature
    all return False.
    """
    recovered = recover_signer(message, signature)
    if recovered is None:
        return False

    if recovered.lower() != claimed_sender.strip().lower():
        logger.info(
            "signature_signer_mismatch",
            claimed=claimed_sender,
            recovered=recovered,
        )
        return False
    return True
