"""
Executes one authorization on-chain and classifies the outcome.

Order of checks (each can short-circuit to a failed outcome):
1. canonical message + signature recovery
2. batch sum and executor restriction
3. nonce against current ledger state
4. faucet eligibility / sender balance
5. eth_call simulation
6. sign once, broadcast with bounded backoff, wait for the receipt

Signature and nonce failures are permanent and never retried. Transient node
errors are retried only until the transaction is accepted by the node.
"""

import time
from typing import Any, Callable, Optional, TypeVar

import structlog

from .canonical import canonical_message, normalize_address
from .evm import (
    ConfirmationTimeout,
    SubmissionRejected,
    TransientChainError,
    build_contract_call,
)
from .models import (
    Authorization,
    DispersePayload,
    ExecutionOutcome,
    FailureReason,
    FaucetPayload,
    NonceMode,
)
from .nonce import NonceStatus, validate_nonce
from .signer import verify_signature

logger = structlog.get_logger()

T = TypeVar("T")


class Executor:
    """
    Runs the validate-submit-confirm pipeline for a single authorization.

    `chain` is an EvmClient (or anything exposing the same methods).
    """

    def __init__(
        self,
        chain: Any,
        evvm_id: int,
        fisher_address: str,
        confirmation_timeout: float = 120.0,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.chain = chain
        self.evvm_id = evvm_id
        self.fisher_address = fisher_address
        self.confirmation_timeout = confirmation_timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    def execute(self, auth: Authorization) -> ExecutionOutcome:
        log = logger.bind(
            operation=auth.operation.value,
            sender=auth.sender,
            nonce=auth.nonce,
        )

        message = canonical_message(self.evvm_id, auth)
        if message is None:
            return self._fail(
                log,
                FailureReason.MALFORMED_AUTHORIZATION,
                "Authorization cannot be rendered as a canonical message",
            )

        if not verify_signature(message, auth.signature, auth.sender):
            return self._fail(
                log,
                FailureReason.SIGNATURE_MISMATCH,
                "Signature does not recover to the sender",
            )

        payload = auth.payload
        if isinstance(payload, DispersePayload) and payload.recipients_total != payload.amount:
            return self._fail(
                log,
                FailureReason.BATCH_SUM_MISMATCH,
                f"Recipients sum to {payload.recipients_total}, batch declares {payload.amount}",
            )

        if not auth.executor_is_open and normalize_address(auth.executor) != normalize_address(
            self.fisher_address
        ):
            return self._fail(
                log,
                FailureReason.EXECUTOR_NOT_PERMITTED,
                f"Only {auth.executor} may execute this authorization",
            )

        try:
            failure = self._check_ledger_state(auth, log)
        except TransientChainError as e:
            return self._fail(
                log,
                FailureReason.TRANSIENT_SUBMISSION_FAILURE,
                f"Ledger state unavailable: {e}",
            )
        if failure is not None:
            return failure

        return self._submit(auth, log)

    # ------------------------------------------------------------------
    # Validation against ledger state
    # ------------------------------------------------------------------

    def _check_ledger_state(self, auth: Authorization, log: Any) -> Optional[ExecutionOutcome]:
        payload = auth.payload

        current: Optional[int] = None
        if auth.nonce_mode is NonceMode.SEQUENTIAL:
            current = self._retry(lambda: self.chain.get_sync_nonce(auth.sender), "get_sync_nonce")

        if isinstance(payload, FaucetPayload):
            def is_used(sender: str, nonce: int) -> bool:
                return self._retry(
                    lambda: self.chain.is_faucet_nonce_used(payload.faucet, sender, nonce),
                    "is_faucet_nonce_used",
                )
        else:
            def is_used(sender: str, nonce: int) -> bool:
                return self._retry(
                    lambda: self.chain.is_async_nonce_used(sender, nonce),
                    "is_async_nonce_used",
                )

        status = validate_nonce(auth.sender, auth.nonce, auth.nonce_mode, current, is_used)
        if status is not NonceStatus.VALID:
            detail = f"Nonce {auth.nonce} is {status.value}"
            if current is not None:
                detail += f" (ledger expects {current})"
            return self._fail(log, status.failure_reason, detail)

        if isinstance(payload, FaucetPayload):
            eligible, remaining = self._retry(
                lambda: self.chain.can_claim(payload.faucet, auth.sender), "can_claim"
            )
            if not eligible:
                return self._fail(
                    log,
                    FailureReason.CLAIM_NOT_ELIGIBLE,
                    f"Faucet cooldown active, {remaining}s remaining",
                )
            return None

        required = auth.amount + auth.priority_fee
        balance = self._retry(
            lambda: self.chain.get_balance(auth.sender, auth.token), "get_balance"
        )
        if balance < required:
            return self._fail(
                log,
                FailureReason.INSUFFICIENT_BALANCE,
                f"Balance {balance} does not cover amount + fee {required}",
            )
        return None

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def _submit(self, auth: Authorization, log: Any) -> ExecutionOutcome:
        try:
            call = build_contract_call(auth)
        except ValueError as e:
            return self._fail(log, FailureReason.MALFORMED_AUTHORIZATION, str(e))

        try:
            revert = self._retry(lambda: self.chain.simulate(call), "simulate")
            if revert is not None:
                return self._fail(log, FailureReason.ON_CHAIN_REVERT, revert)
            submission = self._retry(lambda: self.chain.sign_submission(call), "sign_submission")
        except TransientChainError as e:
            return self._fail(log, FailureReason.TRANSIENT_SUBMISSION_FAILURE, str(e))

        # The same signed bytes are re-sent on every attempt, so a retry after
        # a lost reply cannot create a second transaction.
        attempts = 0

        def send() -> str:
            nonlocal attempts
            attempts += 1
            return self.chain.broadcast(submission, resend=attempts > 1)

        try:
            tx_hash = self._retry(send, "broadcast")
        except TransientChainError as e:
            return self._fail(
                log,
                FailureReason.TRANSIENT_SUBMISSION_FAILURE,
                f"Broadcast failed after {self.max_attempts} attempts: {e}",
                tx_hash=submission.tx_hash,
            )
        except SubmissionRejected as e:
            return self._fail(log, FailureReason.SUBMISSION_REJECTED, str(e))

        log = log.bind(tx_hash=tx_hash)
        log.info("relay_tx_accepted", function=call.function_name)

        # Accepted: from here on nothing is retried.
        try:
            receipt = self.chain.wait_for_receipt(tx_hash, self.confirmation_timeout)
        except ConfirmationTimeout as e:
            return self._fail(log, FailureReason.CONFIRMATION_TIMEOUT, str(e), tx_hash=tx_hash)
        except (TransientChainError, OSError) as e:
            return self._fail(
                log,
                FailureReason.CONFIRMATION_TIMEOUT,
                f"Lost contact while waiting for receipt: {e}",
                tx_hash=tx_hash,
            )

        if receipt.status == 1:
            log.info(
                "relay_tx_confirmed",
                gas_used=receipt.gas_used,
                block=receipt.block_number,
                priority_fee=auth.priority_fee,
            )
            return ExecutionOutcome.executed(
                tx_hash=tx_hash,
                gas_used=receipt.gas_used,
                gas_cost_wei=receipt.gas_cost_wei,
                priority_fee_earned=auth.priority_fee,
            )

        reason = self.chain.revert_reason(call, receipt.block_number)
        return self._fail(
            log,
            FailureReason.ON_CHAIN_REVERT,
            reason or "Transaction reverted",
            tx_hash=tx_hash,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _retry(self, fn: Callable[[], T], action: str) -> T:
        """Retry `fn` on TransientChainError with exponential backoff."""
        for attempt in range(self.max_attempts):
            try:
                return fn()
            except TransientChainError as e:
                if attempt == self.max_attempts - 1:
                    raise
                delay = self.backoff_seconds * (2 ** attempt)
                logger.warning(
                    "chain_request_retry",
                    action=action,
                    attempt=attempt + 1,
                    delay=delay,
                    error=str(e),
                )
                self._sleep(delay)
        raise AssertionError("unreachable")

    def _fail(
        self,
        log: Any,
        reason: FailureReason,
        detail: str,
        tx_hash: Optional[str] = None,
    ) -> ExecutionOutcome:
        log.warning("execution_failed", reason=reason.value, detail=detail)
        return ExecutionOutcome.failed(reason, detail=detail, tx_hash=tx_hash)
