"""
Pydantic models for API responses and operator requests.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from .models import PendingRecord


# ============================================================================
# Intake
# ============================================================================

class SubmitResponse(BaseModel):
    """Result of submitting a signed authorization."""

    success: bool = Field(..., description="Whether the authorization is in the pool")
    id: str = Field(..., description="Pool record id")
    status: str = Field(..., description="Current record status")
    created: bool = Field(..., description="False when the signature was already known")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "success": True,
                    "id": "0x1234567890abcdef1234567890abcdef12345678-7-1718000000000",
                    "status": "pending",
                    "created": True,
                }
            ]
        }
    }


class ErrorResponse(BaseModel):
    error: str
    detail: str


# ============================================================================
# Records
# ============================================================================

class RecordResponse(BaseModel):
    """A pool record as seen by operators."""

    id: str
    operation: str
    sender: str
    nonce: str = Field(..., description="Decimal string (uint256)")
    nonce_mode: str
    priority_fee: str = Field(..., description="Decimal string (uint256)")
    executor: str
    status: str
    created_at: datetime
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    tx_hash: Optional[str] = None
    gas_used: Optional[int] = None
    failure_reason: Optional[str] = None
    error_detail: Optional[str] = None
    authorization: dict[str, Any]

    @classmethod
    def from_record(cls, record: PendingRecord) -> "RecordResponse":
        auth = record.authorization
        return cls(
            id=record.id,
            operation=auth.operation.value,
            sender=auth.sender,
            nonce=str(auth.nonce),
            nonce_mode=auth.nonce_mode.value,
            priority_fee=str(auth.priority_fee),
            executor=auth.executor,
            status=record.status.value,
            created_at=record.created_at,
            claimed_by=record.claimed_by,
            claimed_at=record.claimed_at,
            completed_at=record.completed_at,
            tx_hash=record.tx_hash,
            gas_used=record.gas_used,
            failure_reason=record.failure_reason.value if record.failure_reason else None,
            error_detail=record.error_detail,
            authorization=auth.to_dict(),
        )


class RecordListResponse(BaseModel):
    records: list[RecordResponse]
    count: int


class ConfirmRequest(BaseModel):
    """External confirmation of a record's transaction."""

    tx_hash: str = Field(
        ...,
        pattern=r"^0x[0-9a-fA-F]{64}$",
        description="Hash of the transaction that executed the authorization",
    )


# ============================================================================
# Health
# ============================================================================

class HealthResponse(BaseModel):
    """Service health status."""

    status: str = Field(..., description="ok or degraded")
    version: str
    evm_rpc: bool = Field(..., description="Whether an RPC endpoint answers")
    records: dict[str, int] = Field(..., description="Pool record counts by status")
    contracts: dict[str, str]
