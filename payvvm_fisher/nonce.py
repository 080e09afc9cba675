"""
Authorization nonce validation against ledger state.

Sequential ("sync") nonces must equal the sender's next expected value and
give total ordering per sender. Unique ("async") nonces only have to be
unused, which lets independent authorizations settle in any order.
"""

from enum import Enum
from typing import Callable, Optional

from .models import FailureReason, NonceMode


class NonceStatus(str, Enum):
    VALID = "valid"
    STALE = "stale"
    ALREADY_USED = "already_used"
    OUT_OF_ORDER = "out_of_order"

    @property
    def failure_reason(self) -> Optional[FailureReason]:
        return _FAILURE_REASONS.get(self)


_FAILURE_REASONS = {
    NonceStatus.STALE: FailureReason.NONCE_STALE,
    NonceStatus.ALREADY_USED: FailureReason.NONCE_ALREADY_USED,
    NonceStatus.OUT_OF_ORDER: FailureReason.NONCE_OUT_OF_ORDER,
}


def validate_nonce(
    sender: str,
    nonce: int,
    mode: NonceMode,
    on_chain_sequential_nonce: Optional[int],
    is_used: Callable[[str, int], bool],
) -> NonceStatus:
    """
    Classify an authorization nonce.

    Args:
        sender: Claimed signer of the authorization
        nonce: Nonce carried by the authorization
        mode: Sequential or unique ordering
        on_chain_sequential_nonce: Next nonce the ledger expects from `sender`
            (only consulted in sequential mode)
        is_used: Ledger lookup for consumed unique nonces (only called in
            unique mode)

    Both STALE and OUT_OF_ORDER are permanent for this exact authorization;
    the client has to sign a new one once the conflicting nonce settles.
    """
    if mode is NonceMode.SEQUENTIAL:
        if on_chain_sequential_nonce is None:
            raise ValueError("sequential nonce validation requires the on-chain nonce")
        if nonce == on_chain_sequential_nonce:
            return NonceStatus.VALID
        if nonce < on_chain_sequential_nonce:
            return NonceStatus.STALE
        return NonceStatus.OUT_OF_ORDER

    if is_used(sender, nonce):
        return NonceStatus.ALREADY_USED
    return NonceStatus.VALID
