"""
Domain types for signed authorizations and their pool records.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class OperationKind(str, Enum):
    """Kind of on-chain operation an authorization asks for."""

    PAY = "pay"
    DISPERSE_PAY = "dispersePay"
    CLAIM_FAUCET = "claimFaucet"


class NonceMode(str, Enum):
    """
    Ordering model of an authorization nonce.

    SEQUENTIAL must equal the sender's next expected nonce ("sync").
    UNIQUE must simply never have been consumed ("async").
    """

    SEQUENTIAL = "sequential"
    UNIQUE = "unique"

    @classmethod
    def from_priority_flag(cls, priority_flag: bool) -> "NonceMode":
        return cls.UNIQUE if priority_flag else cls.SEQUENTIAL

    @property
    def priority_flag(self) -> bool:
        return self is NonceMode.UNIQUE


class FaucetKind(str, Enum):
    """Token faucets that accept signed claims."""

    PYUSD = "pyusd"
    MATE = "mate"

    @property
    def function_name(self) -> str:
        return "claimPyusd" if self is FaucetKind.PYUSD else "claimMate"


class RecordStatus(str, Enum):
    """Lifecycle state of a pool record."""

    PENDING = "pending"
    CLAIMED = "claimed"
    EXECUTED = "executed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RecordStatus.EXECUTED, RecordStatus.FAILED)


class FailureReason(str, Enum):
    """Reason codes recorded on failed executions."""

    MALFORMED_AUTHORIZATION = "malformed_authorization"
    SIGNATURE_MISMATCH = "signature_mismatch"
    BATCH_SUM_MISMATCH = "batch_sum_mismatch"
    EXECUTOR_NOT_PERMITTED = "executor_not_permitted"
    NONCE_STALE = "nonce_stale"
    NONCE_OUT_OF_ORDER = "nonce_out_of_order"
    NONCE_ALREADY_USED = "nonce_already_used"
    CLAIM_NOT_ELIGIBLE = "claim_not_eligible"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    TRANSIENT_SUBMISSION_FAILURE = "transient_submission_failure"
    SUBMISSION_REJECTED = "submission_rejected"
    ON_CHAIN_REVERT = "on_chain_revert"
    CONFIRMATION_TIMEOUT = "confirmation_timeout"
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True)
class Recipient:
    """One entry of a dispersePay batch."""

    amount: int
    to_address: str
    to_identity: str = ""


@dataclass(frozen=True)
class PayPayload:
    to_address: str
    token: str
    amount: int
    to_identity: str = ""


@dataclass(frozen=True)
class DispersePayload:
    recipients: tuple[Recipient, ...]
    token: str
    amount: int

    @property
    def recipients_total(self) -> int:
        return sum(r.amount for r in self.recipients)


@dataclass(frozen=True)
class FaucetPayload:
    faucet: FaucetKind


Payload = Union[PayPayload, DispersePayload, FaucetPayload]


@dataclass(frozen=True)
class Authorization:
    """A signed, off-chain intent to perform one on-chain operation."""

    operation: OperationKind
    sender: str
    payload: Payload
    nonce: int
    nonce_mode: NonceMode
    signature: str
    priority_fee: int = 0
    executor: str = ZERO_ADDRESS

    @property
    def token(self) -> Optional[str]:
        if isinstance(self.payload, (PayPayload, DispersePayload)):
            return self.payload.token
        return None

    @property
    def amount(self) -> int:
        if isinstance(self.payload, (PayPayload, DispersePayload)):
            return self.payload.amount
        return 0

    @property
    def executor_is_open(self) -> bool:
        return self.executor.lower() == ZERO_ADDRESS

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-safe dict (big integers as decimal strings)."""
        data: dict[str, Any] = {
            "operation": self.operation.value,
            "sender": self.sender,
            "nonce": str(self.nonce),
            "nonce_mode": self.nonce_mode.value,
            "signature": self.signature,
            "priority_fee": str(self.priority_fee),
            "executor": self.executor,
        }
        payload = self.payload
        if isinstance(payload, PayPayload):
            data["payload"] = {
                "to_address": payload.to_address,
                "to_identity": payload.to_identity,
                "token": payload.token,
                "amount": str(payload.amount),
            }
        elif isinstance(payload, DispersePayload):
            data["payload"] = {
                "recipients": [
                    {
                        "amount": str(r.amount),
                        "to_address": r.to_address,
                        "to_identity": r.to_identity,
                    }
                    for r in payload.recipients
                ],
                "token": payload.token,
                "amount": str(payload.amount),
            }
        else:
            data["payload"] = {"faucet": payload.faucet.value}
        return data

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Authorization":
        operation = OperationKind(data["operation"])
        raw = data["payload"]
        payload: Payload
        if operation is OperationKind.PAY:
            payload = PayPayload(
                to_address=raw["to_address"],
                to_identity=raw.get("to_identity", ""),
                token=raw["token"],
                amount=int(raw["amount"]),
            )
        elif operation is OperationKind.DISPERSE_PAY:
            payload = DispersePayload(
                recipients=tuple(
                    Recipient(
                        amount=int(r["amount"]),
                        to_address=r["to_address"],
                        to_identity=r.get("to_identity", ""),
                    )
                    for r in raw["recipients"]
                ),
                token=raw["token"],
                amount=int(raw["amount"]),
            )
        else:
            payload = FaucetPayload(faucet=FaucetKind(raw["faucet"]))

        return Authorization(
            operation=operation,
            sender=data["sender"],
            payload=payload,
            nonce=int(data["nonce"]),
            nonce_mode=NonceMode(data["nonce_mode"]),
            signature=data["signature"],
            priority_fee=int(data.get("priority_fee", 0)),
            executor=data.get("executor", ZERO_ADDRESS),
        )


@dataclass
class ExecutionOutcome:
    """Result of one execution attempt."""

    success: bool
    tx_hash: Optional[str] = None
    gas_used: Optional[int] = None
    gas_cost_wei: Optional[int] = None
    priority_fee_earned: int = 0
    reason: Optional[FailureReason] = None
    detail: Optional[str] = None

    @classmethod
    def executed(
        cls,
        tx_hash: str,
        gas_used: int,
        gas_cost_wei: Optional[int] = None,
        priority_fee_earned: int = 0,
    ) -> "ExecutionOutcome":
        return cls(
            success=True,
            tx_hash=tx_hash,
            gas_used=gas_used,
            gas_cost_wei=gas_cost_wei,
            priority_fee_earned=priority_fee_earned,
        )

    @classmethod
    def failed(
        cls,
        reason: FailureReason,
        detail: Optional[str] = None,
        tx_hash: Optional[str] = None,
    ) -> "ExecutionOutcome":
        return cls(success=False, reason=reason, detail=detail, tx_hash=tx_hash)


@dataclass
class PendingRecord:
    """Pool-owned lifecycle wrapper around an Authorization."""

    id: str
    dedup_key: str
    authorization: Authorization
    status: RecordStatus
    created_at: datetime
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    tx_hash: Optional[str] = None
    gas_used: Optional[int] = None
    failure_reason: Optional[FailureReason] = None
    error_detail: Optional[str] = None


@dataclass
class InsertResult:
    """Result of inserting an authorization into the pool."""

    created: bool
    record_id: str
    status: RecordStatus
