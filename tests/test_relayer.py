"""
Tests for the relay loop: policy, claiming, isolation and multi-relayer safety.
"""

import threading

import pytest

from payvvm_fisher.canonical import normalize_address
from payvvm_fisher.config import RelayerConfig, Settings
from payvvm_fisher.evm import ChainReceipt
from payvvm_fisher.executor import Executor
from payvvm_fisher.models import FailureReason, NonceMode, RecordStatus
from payvvm_fisher.relayer import FisherNotAuthorized, FisherRelayer

from conftest import EVVM_ID, FISHER, OTHER, SENDER, FakeChain, make_claim, make_pay


def _config(**overrides) -> RelayerConfig:
    values = {"evvm_id": EVVM_ID, "batch_limit": 10, "poll_interval_seconds": 0.01}
    values.update(overrides)
    return RelayerConfig(settings=Settings(_env_file=None, **values))


def _relayer(pool, chain, config=None, executor=None) -> FisherRelayer:
    return FisherRelayer(
        config or _config(),
        pool=pool,
        chain=chain,
        executor=executor
        or Executor(chain, evvm_id=EVVM_ID, fisher_address=chain.address, sleep=lambda _: None),
        sleep=lambda _: None,
    )


class CrashingExecutor(Executor):
    """Raises for one nonce, executes everything else."""

    def __init__(self, chain, crash_nonce: int):
        super().__init__(chain, evvm_id=EVVM_ID, fisher_address=chain.address, sleep=lambda _: None)
        self.crash_nonce = crash_nonce

    def execute(self, auth):
        if auth.nonce == self.crash_nonce:
            raise RuntimeError("boom")
        return super().execute(auth)


class TestRunOnce:
    def test_executes_pending_records(self, pool, chain) -> None:
        ids = [pool.insert(make_pay(nonce=n)).record_id for n in range(3)]
        relayer = _relayer(pool, chain)

        results = relayer.run_once()

        assert [r.record_id for r in results] == ids
        assert all(r.outcome.success for r in results)
        for record_id in ids:
            assert pool.get(record_id).status is RecordStatus.EXECUTED
        assert relayer.state.successful == 3
        assert relayer.state.priority_fees_earned == 15
        assert relayer.state.gas_spent_wei == 3 * 120_000

    def test_failures_are_recorded(self, pool, chain) -> None:
        chain.sync_nonces[SENDER.lower()] = 10
        record_id = pool.insert(make_pay(nonce=3)).record_id
        relayer = _relayer(pool, chain)

        relayer.run_once()

        record = pool.get(record_id)
        assert record.status is RecordStatus.FAILED
        assert record.failure_reason is FailureReason.NONCE_STALE
        assert relayer.state.failed == 1

    def test_batch_limit(self, pool, chain) -> None:
        for n in range(5):
            pool.insert(make_pay(nonce=n, mode=NonceMode.UNIQUE))
        relayer = _relayer(pool, chain, config=_config(batch_limit=2))

        assert len(relayer.run_once()) == 2
        assert pool.count_by_status()["pending"] == 3

    def test_fee_order(self, pool, chain) -> None:
        low = pool.insert(make_pay(nonce=1, fee=1, mode=NonceMode.UNIQUE)).record_id
        high = pool.insert(make_pay(nonce=2, fee=99, mode=NonceMode.UNIQUE)).record_id
        relayer = _relayer(pool, chain, config=_config(pending_order="fee"))

        results = relayer.run_once()

        assert [r.record_id for r in results] == [high, low]

    def test_unreachable_chain_skips_cycle(self, pool, chain) -> None:
        record_id = pool.insert(make_pay()).record_id
        chain.reachable = False

        assert _relayer(pool, chain).run_once() == []
        assert pool.get(record_id).status is RecordStatus.PENDING


class TestRelayPolicy:
    """Records a relayer declines stay pending for other fishers."""

    def test_low_fee_is_left_pending(self, pool, chain) -> None:
        cheap = pool.insert(make_pay(nonce=0, fee=5, mode=NonceMode.UNIQUE)).record_id
        rich = pool.insert(make_pay(nonce=1, fee=50, mode=NonceMode.UNIQUE)).record_id
        relayer = _relayer(pool, chain, config=_config(min_priority_fee=10))

        results = relayer.run_once()

        assert [r.record_id for r in results] == [rich]
        assert pool.get(cheap).status is RecordStatus.PENDING

    def test_fee_minimum_does_not_apply_to_claims(self, pool, chain) -> None:
        claim = pool.insert(make_claim()).record_id
        relayer = _relayer(pool, chain, config=_config(min_priority_fee=10))

        relayer.run_once()

        assert pool.get(claim).status is RecordStatus.EXECUTED

    def test_restricted_to_other_executor_is_left_pending(self, pool, chain) -> None:
        record_id = pool.insert(make_pay(executor=OTHER)).record_id

        assert _relayer(pool, chain).run_once() == []
        assert pool.get(record_id).status is RecordStatus.PENDING

    def test_skipped_records_do_not_block_the_window(self, pool, chain) -> None:
        for n in range(2):
            pool.insert(make_pay(nonce=n, fee=1, mode=NonceMode.UNIQUE))
        pool.insert(make_pay(nonce=10, executor=OTHER, fee=50, mode=NonceMode.UNIQUE))
        eligible = pool.insert(make_pay(nonce=20, fee=50, mode=NonceMode.UNIQUE)).record_id
        relayer = _relayer(pool, chain, config=_config(batch_limit=2, min_priority_fee=10))

        results = relayer.run_once()

        assert [r.record_id for r in results] == [eligible]
        assert pool.get(eligible).status is RecordStatus.EXECUTED
        assert pool.count_by_status()["pending"] == 3

    def test_restricted_to_this_fisher(self, pool, chain) -> None:
        record_id = pool.insert(make_pay(executor=FISHER)).record_id

        _relayer(pool, chain).run_once()

        assert pool.get(record_id).status is RecordStatus.EXECUTED


class TestIsolation:
    def test_crash_fails_one_record_only(self, pool, chain) -> None:
        ids = [
            pool.insert(make_pay(nonce=n, mode=NonceMode.UNIQUE)).record_id for n in range(3)
        ]
        relayer = _relayer(pool, chain, executor=CrashingExecutor(chain, crash_nonce=1))

        results = relayer.run_once()

        assert len(results) == 3
        assert pool.get(ids[0]).status is RecordStatus.EXECUTED
        crashed = pool.get(ids[1])
        assert crashed.status is RecordStatus.FAILED
        assert crashed.failure_reason is FailureReason.INTERNAL_ERROR
        assert crashed.error_detail == "boom"
        assert pool.get(ids[2]).status is RecordStatus.EXECUTED


class TestMultipleRelayers:
    """Several relayers over one pool execute each record exactly once."""

    def test_second_relayer_finds_nothing(self, pool, chain) -> None:
        pool.insert(make_pay(nonce=0))
        first = _relayer(pool, chain)
        second = _relayer(pool, chain)

        assert len(first.run_once()) == 1
        assert second.run_once() == []
        assert len(chain.broadcasts) == 1

    def test_concurrent_relayers(self, pool, chain) -> None:
        ids = [
            pool.insert(make_pay(nonce=n, mode=NonceMode.UNIQUE)).record_id for n in range(6)
        ]
        relayers = [_relayer(pool, chain) for _ in range(3)]
        barrier = threading.Barrier(len(relayers))
        processed: list[str] = []
        lock = threading.Lock()

        def work(relayer: FisherRelayer) -> None:
            barrier.wait()
            results = relayer.run_once()
            with lock:
                processed.extend(r.record_id for r in results)

        threads = [threading.Thread(target=work, args=(r,)) for r in relayers]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(processed) == sorted(ids)
        assert len(chain.broadcasts) == len(ids)
        assert all(pool.get(i).status is RecordStatus.EXECUTED for i in ids)


class CachedNonceChain(FakeChain):
    """Reports the sequential nonce as it was before either transaction landed."""

    def get_sync_nonce(self, user: str) -> int:
        return 7

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> ChainReceipt:
        call = self._calls[tx_hash]
        sender, nonce = normalize_address(call.args[0]), call.args[6]
        if self.sync_nonces.get(sender, 0) != nonce:
            return ChainReceipt(status=0, gas_used=30_000, block_number=101)
        return super().wait_for_receipt(tx_hash, timeout)


class TestStaleNonceRace:
    def test_second_authorization_with_same_nonce_reverts(self, pool) -> None:
        chain = CachedNonceChain()
        chain.sync_nonces[SENDER.lower()] = 7
        first = pool.insert(make_pay(nonce=7, amount=10)).record_id
        second = pool.insert(make_pay(nonce=7, amount=20)).record_id

        results = _relayer(pool, chain).run_once()

        assert [r.outcome.success for r in results] == [True, False]
        assert pool.get(first).status is RecordStatus.EXECUTED
        record = pool.get(second)
        assert record.status is RecordStatus.FAILED
        assert record.failure_reason is FailureReason.ON_CHAIN_REVERT
        assert record.error_detail == "EVVM: invalid nonce"
        assert len(chain.broadcasts) == 2


class TestPreflight:
    def test_staker_passes(self, pool, chain) -> None:
        chain.stakers.add(FISHER.lower())

        _relayer(pool, chain).preflight()

    def test_golden_fisher_passes(self, pool, chain) -> None:
        chain.golden_fisher = FISHER

        _relayer(pool, chain).preflight()

    def test_neither_is_refused(self, pool, chain) -> None:
        with pytest.raises(FisherNotAuthorized):
            _relayer(pool, chain).preflight()

    def test_check_can_be_disabled(self, pool, chain) -> None:
        _relayer(pool, chain, config=_config(require_staker=False)).preflight()


class TestRunLoop:
    def test_run_until_stopped(self, pool) -> None:
        chain = FakeChain()
        record_id = pool.insert(make_pay()).record_id
        cycles = []

        def sleep(_: float) -> None:
            cycles.append(1)
            if len(cycles) >= 2:
                relayer.stop()

        relayer = FisherRelayer(
            _config(),
            pool=pool,
            chain=chain,
            executor=Executor(chain, evvm_id=EVVM_ID, fisher_address=FISHER, sleep=sleep),
            sleep=sleep,
        )

        relayer.run()

        assert len(cycles) == 2
        assert not relayer.state.is_running
        assert pool.get(record_id).status is RecordStatus.EXECUTED

    def test_reads_domain_id_from_ledger_when_unset(self, pool, chain) -> None:
        relayer = FisherRelayer(_config(evvm_id=None), pool=pool, chain=chain)

        assert relayer.executor.evvm_id == EVVM_ID
        assert relayer.fisher_address == FISHER
