"""
Main relay loop - polls the pool, claims, executes and records outcomes.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

import structlog

from .canonical import normalize_address
from .config import RelayerConfig
from .db import PoolError, SubmissionPool
from .evm import EvmClient
from .executor import Executor
from .models import ExecutionOutcome, FailureReason, OperationKind, PendingRecord

logger = structlog.get_logger()


class FisherNotAuthorized(Exception):
    """The relay account may not execute on the ledger."""


@dataclass
class RelayerState:
    """Current relayer state."""

    is_running: bool = False
    started_at: datetime = field(default_factory=datetime.now)
    last_poll_time: Optional[datetime] = None
    last_execution: Optional[datetime] = None
    executions: int = 0
    successful: int = 0
    failed: int = 0
    priority_fees_earned: int = 0
    gas_spent_wei: int = 0

    def record(self, outcome: ExecutionOutcome) -> None:
        self.executions += 1
        self.last_execution = datetime.now()
        if outcome.success:
            self.successful += 1
            self.priority_fees_earned += outcome.priority_fee_earned
            self.gas_spent_wei += outcome.gas_cost_wei or 0
        else:
            self.failed += 1


@dataclass
class CycleResult:
    """What happened to one record during a poll cycle."""

    record_id: str
    outcome: ExecutionOutcome


class FisherRelayer:
    """
    Relay worker that:
    1. Lists pending authorizations from the shared pool
    2. Claims each one it is willing to execute
    3. Executes it on-chain and records the terminal outcome

    Several relayers may share one pool; the pool's claim is the only
    coordination between them.
    """

    def __init__(
        self,
        config: RelayerConfig,
        pool: Optional[SubmissionPool] = None,
        chain: Optional[EvmClient] = None,
        executor: Optional[Executor] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.state = RelayerState()
        self._sleep = sleep

        settings = config.settings

        self.pool = pool or SubmissionPool(settings.database_url)
        self.chain = chain or EvmClient.from_settings(settings)

        if executor is None:
            evvm_id = settings.evvm_id
            if evvm_id is None:
                evvm_id = self.chain.get_evvm_id()
                logger.info("evvm_id_loaded", evvm_id=evvm_id)
            executor = Executor(
                self.chain,
                evvm_id=evvm_id,
                fisher_address=self.chain.address,
                confirmation_timeout=settings.confirmation_timeout_seconds,
                max_attempts=settings.submit_max_attempts,
                backoff_seconds=settings.retry_backoff_seconds,
                sleep=sleep,
            )
        self.executor = executor
        self.fisher_address = executor.fisher_address

        logger.info(
            "relayer_initialized",
            fisher=self.fisher_address,
            evvm_id=executor.evvm_id,
            min_priority_fee=settings.min_priority_fee,
            poll_interval=settings.poll_interval_seconds,
            batch_limit=settings.batch_limit,
            order=settings.pending_order,
        )

    def preflight(self) -> None:
        """
        Check the fisher may execute on the ledger.

        Raises:
            FisherNotAuthorized: neither staker nor golden fisher while
                require_staker is set
        """
        golden = self.chain.get_golden_fisher()
        is_golden = normalize_address(golden) == normalize_address(self.fisher_address)
        is_staker = self.chain.is_staker(self.fisher_address)

        logger.info(
            "fisher_status",
            fisher=self.fisher_address,
            golden_fisher=is_golden,
            staker=is_staker,
        )

        if not (is_staker or is_golden) and self.config.settings.require_staker:
            raise FisherNotAuthorized(
                f"{self.fisher_address} is neither a staker nor the golden fisher"
            )

    def should_execute(self, record: PendingRecord) -> bool:
        """Relay policy: records skipped here stay pending for other fishers."""
        auth = record.authorization
        settings = self.config.settings

        if auth.operation in (OperationKind.PAY, OperationKind.DISPERSE_PAY):
            if auth.priority_fee < settings.min_priority_fee:
                logger.debug(
                    "record_skipped_low_fee",
                    record_id=record.id,
                    priority_fee=auth.priority_fee,
                    min_priority_fee=settings.min_priority_fee,
                )
                return False

        if not auth.executor_is_open and normalize_address(auth.executor) != normalize_address(
            self.fisher_address
        ):
            logger.debug("record_skipped_executor", record_id=record.id, executor=auth.executor)
            return False

        return True

    def run_once(self) -> list[CycleResult]:
        """
        Run one poll cycle.

        Returns the outcome of every record this relayer claimed.
        """
        results: list[CycleResult] = []
        settings = self.config.settings
        self.state.last_poll_time = datetime.now()

        if not self.chain.is_reachable():
            logger.warning("chain_unreachable_cycle_skipped")
            return results

        try:
            # Records this relay would skip are filtered in the query so they
            # cannot fill the batch window ahead of eligible ones.
            pending = self.pool.list_pending(
                settings.batch_limit,
                settings.pending_order,
                min_priority_fee=settings.min_priority_fee,
                executor=self.fisher_address,
            )
        except Exception as e:
            logger.error("pool_unavailable", error=str(e))
            return results

        for record in pending:
            try:
                result = self._process_record(record)
            except Exception as e:
                logger.error("record_processing_error", record_id=record.id, error=str(e))
                continue
            if result is not None:
                results.append(result)

        return results

    def run(self) -> None:
        """Run the relayer continuously."""
        self.state.is_running = True
        settings = self.config.settings

        logger.info("relayer_starting", poll_interval=settings.poll_interval_seconds)

        while self.state.is_running:
            try:
                results = self.run_once()
                if results:
                    logger.info(
                        "poll_cycle_complete",
                        processed=len(results),
                        successful=self.state.successful,
                        failed=self.state.failed,
                    )
            except Exception as e:
                logger.error("poll_cycle_error", error=str(e))

            self._sleep(settings.poll_interval_seconds)

    def stop(self) -> None:
        """Stop the relayer."""
        self.state.is_running = False
        logger.info(
            "relayer_stopping",
            executions=self.state.executions,
            successful=self.state.successful,
            failed=self.state.failed,
            priority_fees_earned=self.state.priority_fees_earned,
            gas_spent_wei=self.state.gas_spent_wei,
        )

    def _process_record(self, record: PendingRecord) -> Optional[CycleResult]:
        if not self.should_execute(record):
            return None

        if not self.pool.try_claim(record.id, self.fisher_address):
            return None

        try:
            outcome = self.executor.execute(record.authorization)
        except Exception as e:
            # The record is claimed and can never return to pending.
            logger.error("execution_crashed", record_id=record.id, error=str(e))
            outcome = ExecutionOutcome.failed(FailureReason.INTERNAL_ERROR, detail=str(e))

        self.state.record(outcome)

        try:
            self.pool.complete(record.id, outcome)
        except PoolError as e:
            logger.error("record_completion_rejected", record_id=record.id, error=str(e))
        except Exception as e:
            # Left claimed for reconciliation.
            logger.error(
                "record_completion_failed",
                record_id=record.id,
                tx_hash=outcome.tx_hash,
                error=str(e),
            )

        return CycleResult(record_id=record.id, outcome=outcome)
