"""
Shared fixtures: deterministic keys, signed authorizations, a file-backed
pool and an in-memory stand-in for the EVVM contracts.
"""

import threading
from typing import Optional

import pytest
from eth_account import Account

from payvvm_fisher.canonical import canonical_message, normalize_address
from payvvm_fisher.db import SubmissionPool
from payvvm_fisher.evm import ChainReceipt, ContractCall, SignedSubmission
from payvvm_fisher.models import (
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
from payvvm_fisher.signer import sign_message

EVVM_ID = 1000

SENDER_KEY = "0x" + "11" * 32
SENDER = Account.from_key(SENDER_KEY).address

OTHER_KEY = "0x" + "33" * 32
OTHER = Account.from_key(OTHER_KEY).address

FISHER_KEY = "0x" + "22" * 32
FISHER = Account.from_key(FISHER_KEY).address

TOKEN = "0x0000000000000000000000000000000000000001"
RECIPIENT = "0x" + "ab" * 20
RECIPIENT_2 = "0x" + "cd" * 20


def sign(auth: Authorization, key: str = SENDER_KEY, evvm_id: int = EVVM_ID) -> Authorization:
    """Return `auth` carrying a valid signature from `key`."""
    message = canonical_message(evvm_id, auth)
    assert message is not None
    return Authorization(
        operation=auth.operation,
        sender=auth.sender,
        payload=auth.payload,
        nonce=auth.nonce,
        nonce_mode=auth.nonce_mode,
        signature=sign_message(message, key),
        priority_fee=auth.priority_fee,
        executor=auth.executor,
    )


def make_pay(
    nonce: int = 0,
    amount: int = 100,
    fee: int = 5,
    mode: NonceMode = NonceMode.SEQUENTIAL,
    executor: str = ZERO_ADDRESS,
    sender: str = SENDER,
    key: str = SENDER_KEY,
    to: str = RECIPIENT,
) -> Authorization:
    unsigned = Authorization(
        operation=OperationKind.PAY,
        sender=sender,
        payload=PayPayload(to_address=to, token=TOKEN, amount=amount),
        nonce=nonce,
        nonce_mode=mode,
        signature="0x",
        priority_fee=fee,
        executor=executor,
    )
    return sign(unsigned, key)


def make_disperse(
    amounts: tuple[int, ...] = (60, 40),
    total: Optional[int] = None,
    nonce: int = 0,
    fee: int = 5,
    mode: NonceMode = NonceMode.UNIQUE,
) -> Authorization:
    addresses = [RECIPIENT, RECIPIENT_2]
    recipients = tuple(
        Recipient(amount=amount, to_address=addresses[i % 2])
        for i, amount in enumerate(amounts)
    )
    unsigned = Authorization(
        operation=OperationKind.DISPERSE_PAY,
        sender=SENDER,
        payload=DispersePayload(
            recipients=recipients,
            token=TOKEN,
            amount=sum(amounts) if total is None else total,
        ),
        nonce=nonce,
        nonce_mode=mode,
        signature="0x",
        priority_fee=fee,
    )
    return sign(unsigned)


def make_claim(faucet: FaucetKind = FaucetKind.PYUSD, nonce: int = 1) -> Authorization:
    unsigned = Authorization(
        operation=OperationKind.CLAIM_FAUCET,
        sender=SENDER,
        payload=FaucetPayload(faucet=faucet),
        nonce=nonce,
        nonce_mode=NonceMode.UNIQUE,
        signature="0x",
    )
    return sign(unsigned)


class FakeChain:
    """
    In-memory EVVM ledger and faucets exposing the EvmClient surface.

    Successful receipts consume the authorization nonce, so replaying an
    executed authorization fails validation just like on-chain.
    """

    def __init__(self, address: str = FISHER):
        self.address = address
        self.reachable = True
        self.sync_nonces: dict[str, int] = {}
        self.used_async: set[tuple[str, int]] = set()
        self.faucet_used: set[tuple[FaucetKind, str, int]] = set()
        self.faucet_cooldown: dict[tuple[FaucetKind, str], int] = {}
        self.balances: dict[tuple[str, str], int] = {}
        self.default_balance = 10**24
        self.stakers: set[str] = set()
        self.golden_fisher = ZERO_ADDRESS

        self.read_errors: list[Exception] = []
        self.simulate_revert: Optional[str] = None
        self.broadcast_errors: list[Exception] = []
        self.receipt_status = 1
        self.receipt_error: Optional[Exception] = None
        self.revert_message: Optional[str] = "EVVM: invalid nonce"

        self.simulated: list[ContractCall] = []
        self.signed: list[SignedSubmission] = []
        self.broadcasts: list[SignedSubmission] = []
        self.resends: list[bool] = []
        self._calls: dict[str, ContractCall] = {}
        self._lock = threading.Lock()

    def _read(self) -> None:
        if self.read_errors:
            raise self.read_errors.pop(0)

    # Reads

    def is_reachable(self) -> bool:
        return self.reachable

    def get_evvm_id(self) -> int:
        return EVVM_ID

    def get_sync_nonce(self, user: str) -> int:
        self._read()
        return self.sync_nonces.get(normalize_address(user), 0)

    def is_async_nonce_used(self, user: str, nonce: int) -> bool:
        self._read()
        return (normalize_address(user), nonce) in self.used_async

    def is_faucet_nonce_used(self, faucet: FaucetKind, claimer: str, nonce: int) -> bool:
        self._read()
        return (faucet, normalize_address(claimer), nonce) in self.faucet_used

    def can_claim(self, faucet: FaucetKind, claimer: str) -> tuple[bool, int]:
        self._read()
        remaining = self.faucet_cooldown.get((faucet, normalize_address(claimer)), 0)
        return remaining == 0, remaining

    def get_balance(self, user: str, token: str) -> int:
        self._read()
        key = (normalize_address(user), normalize_address(token))
        return self.balances.get(key, self.default_balance)

    def is_staker(self, user: str) -> bool:
        return normalize_address(user) in self.stakers

    def get_golden_fisher(self) -> str:
        return self.golden_fisher

    # Relayed calls

    def simulate(self, call: ContractCall) -> Optional[str]:
        self.simulated.append(call)
        return self.simulate_revert

    def sign_submission(self, call: ContractCall) -> SignedSubmission:
        with self._lock:
            n = len(self.signed) + 1
            submission = SignedSubmission(
                raw_transaction=bytes([n % 256]) * 32,
                tx_hash="0x" + f"{n:064x}",
                function_name=call.function_name,
            )
            self.signed.append(submission)
            self._calls[submission.tx_hash] = call
        return submission

    def broadcast(self, submission: SignedSubmission, resend: bool = False) -> str:
        self.broadcasts.append(submission)
        self.resends.append(resend)
        if self.broadcast_errors:
            raise self.broadcast_errors.pop(0)
        return submission.tx_hash

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> ChainReceipt:
        if self.receipt_error is not None:
            raise self.receipt_error
        if self.receipt_status == 1:
            self._apply(self._calls[tx_hash])
        return ChainReceipt(
            status=self.receipt_status,
            gas_used=60_000,
            block_number=100,
            effective_gas_price=2,
        )

    def revert_reason(self, call: ContractCall, block_number: int) -> Optional[str]:
        return self.revert_message

    def _apply(self, call: ContractCall) -> None:
        args = call.args
        if call.function_name == "pay":
            sender, nonce, flag = args[0], args[6], args[7]
        elif call.function_name == "dispersePay":
            sender, nonce, flag = args[0], args[5], args[6]
        else:
            self.faucet_used.add((FaucetKind(call.target), normalize_address(args[0]), args[1]))
            return

        sender = normalize_address(sender)
        if flag:
            self.used_async.add((sender, nonce))
        else:
            self.sync_nonces[sender] = nonce + 1


@pytest.fixture
def pool(tmp_path):
    """File-backed pool (in-memory SQLite is per-connection)."""
    pool = SubmissionPool(f"sqlite:///{tmp_path / 'pool.db'}")
    yield pool
    pool.close()


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def sleeps():
    """Collected backoff delays instead of real sleeping."""
    return []
