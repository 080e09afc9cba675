"""
EVM interaction: ledger reads and relayed contract calls.
"""

from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception
import structlog

from .canonical import to_call_address
from .models import (
    Authorization,
    DispersePayload,
    FaucetKind,
    FaucetPayload,
    OperationKind,
    PayPayload,
)

logger = structlog.get_logger()

T = TypeVar("T")

# Node replies meaning "this exact raw transaction is already in the mempool"
ALREADY_ACCEPTED_MARKERS = ("already known", "known transaction")
# Accepted only when the same bytes were sent before
NONCE_TOO_LOW_MARKER = "nonce too low"


# EVVM ledger ABI (minimal)
EVVM_ABI = [
    {
        "inputs": [
            {"name": "from", "type": "address"},
            {"name": "to_address", "type": "address"},
            {"name": "to_identity", "type": "string"},
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "priorityFee", "type": "uint256"},
            {"name": "nonce", "type": "uint256"},
            {"name": "priorityFlag", "type": "bool"},
            {"name": "executor", "type": "address"},
            {"name": "signature", "type": "bytes"},
        ],
        "name": "pay",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "from", "type": "address"},
            {
                "name": "toData",
                "type": "tuple[]",
                "components": [
                    {"name": "amount", "type": "uint256"},
                    {"name": "to_address", "type": "address"},
                    {"name": "to_identity", "type": "string"},
                ],
            },
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "priorityFee", "type": "uint256"},
            {"name": "nonce", "type": "uint256"},
            {"name": "priorityFlag", "type": "bool"},
            {"name": "executor", "type": "address"},
            {"name": "signature", "type": "bytes"},
        ],
        "name": "dispersePay",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "user", "type": "address"}],
        "name": "getNextCurrentSyncNonce",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "user", "type": "address"},
            {"name": "nonce", "type": "uint256"},
        ],
        "name": "getIfUsedAsyncNonce",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "user", "type": "address"},
            {"name": "token", "type": "address"},
        ],
        "name": "getBalance",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "getEvvmID",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "user", "type": "address"}],
        "name": "isAddressStaker",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
]

STAKING_ABI = [
    {
        "inputs": [],
        "name": "getGoldenFisher",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
]


def _faucet_abi(claim_function: str) -> list[dict[str, Any]]:
    return [
        {
            "inputs": [
                {"name": "claimer", "type": "address"},
                {"name": "nonce", "type": "uint256"},
                {"name": "signature", "type": "bytes"},
            ],
            "name": claim_function,
            "outputs": [],
            "stateMutability": "nonpayable",
            "type": "function",
        },
        {
            "inputs": [
                {"name": "user", "type": "address"},
                {"name": "nonce", "type": "uint256"},
            ],
            "name": "isNonceUsed",
            "outputs": [{"name": "", "type": "bool"}],
            "stateMutability": "view",
            "type": "function",
        },
        {
            "inputs": [{"name": "user", "type": "address"}],
            "name": "canClaim",
            "outputs": [
                {"name": "eligible", "type": "bool"},
                {"name": "remainingTime", "type": "uint256"},
            ],
            "stateMutability": "view",
            "type": "function",
        },
    ]


FAUCET_ABIS = {kind: _faucet_abi(kind.function_name) for kind in FaucetKind}


class TransientChainError(Exception):
    """Node unreachable or timed out; safe to retry."""


class SubmissionRejected(Exception):
    """The node refused the relay transaction for a non-transient reason."""


class ConfirmationTimeout(Exception):
    """The transaction was accepted but no receipt arrived in time."""

    def __init__(self, tx_hash: str, timeout: float):
        self.tx_hash = tx_hash
        self.timeout = timeout
        super().__init__(f"No receipt for {tx_hash} after {timeout}s")


@dataclass
class ContractCall:
    """A relayed contract call, ready to simulate or sign."""

    target: str  # "evvm" or a FaucetKind value
    function_name: str
    args: tuple[Any, ...]


@dataclass
class SignedSubmission:
    """Signed relay transaction; re-broadcasting it can never double-submit."""

    raw_transaction: bytes
    tx_hash: str
    function_name: str


@dataclass
class ChainReceipt:
    """The parts of a transaction receipt the relay cares about."""

    status: int
    gas_used: int
    block_number: int
    effective_gas_price: Optional[int] = None

    @property
    def gas_cost_wei(self) -> Optional[int]:
        if self.effective_gas_price is None:
            return None
        return self.gas_used * self.effective_gas_price


def build_contract_call(auth: Authorization) -> ContractCall:
    """
    Map an authorization onto the ledger or faucet call that executes it.

    Addresses go through the same normalization as the canonical message.
    """
    signature = Web3.to_bytes(hexstr=auth.signature)
    payload = auth.payload
    flag = auth.nonce_mode.priority_flag

    if auth.operation is OperationKind.PAY and isinstance(payload, PayPayload):
        return ContractCall(
            target="evvm",
            function_name="pay",
            args=(
                to_call_address(auth.sender),
                to_call_address(payload.to_address),
                payload.to_identity,
                to_call_address(payload.token),
                payload.amount,
                auth.priority_fee,
                auth.nonce,
                flag,
                to_call_address(auth.executor),
                signature,
            ),
        )

    if auth.operation is OperationKind.DISPERSE_PAY and isinstance(payload, DispersePayload):
        to_data = [
            (r.amount, to_call_address(r.to_address), r.to_identity or "")
            for r in payload.recipients
        ]
        return ContractCall(
            target="evvm",
            function_name="dispersePay",
            args=(
                to_call_address(auth.sender),
                to_data,
                to_call_address(payload.token),
                payload.amount,
                auth.priority_fee,
                auth.nonce,
                flag,
                to_call_address(auth.executor),
                signature,
            ),
        )

    if auth.operation is OperationKind.CLAIM_FAUCET and isinstance(payload, FaucetPayload):
        return ContractCall(
            target=payload.faucet.value,
            function_name=payload.faucet.function_name,
            args=(to_call_address(auth.sender), auth.nonce, signature),
        )

    raise ValueError(f"Payload does not match operation {auth.operation.value}")


class EvmClient:
    """Client for EVVM ledger, staking and faucet contracts."""

    def __init__(
        self,
        rpc_urls: list[str],
        private_key: str,
        evvm_address: str,
        staking_address: str,
        faucet_addresses: dict[FaucetKind, str],
        chain_id: int,
        gas_limit: int = 500_000,
    ):
        if not rpc_urls:
            raise ValueError("At least one RPC URL is required")
        self.rpc_urls = rpc_urls
        self._endpoint = 0
        self.w3 = Web3(Web3.HTTPProvider(rpc_urls[0]))
        self.account = Account.from_key(private_key) if private_key else None
        self.evvm_address = Web3.to_checksum_address(evvm_address)
        self.staking_address = Web3.to_checksum_address(staking_address)
        self.faucet_addresses = {
            kind: Web3.to_checksum_address(address)
            for kind, address in faucet_addresses.items()
        }
        self.chain_id = chain_id
        self.gas_limit = gas_limit

        logger.info(
            "evm_client_initialized",
            rpc_url=rpc_urls[0],
            fallbacks=len(rpc_urls) - 1,
            evvm=self.evvm_address,
            fisher=self.account.address if self.account else None,
        )

    @classmethod
    def from_settings(cls, settings: Any) -> "EvmClient":
        return cls(
            rpc_urls=settings.rpc_urls,
            private_key=settings.private_key,
            evvm_address=settings.evvm_address,
            staking_address=settings.staking_address,
            faucet_addresses={
                FaucetKind.PYUSD: settings.pyusd_faucet_address,
                FaucetKind.MATE: settings.mate_faucet_address,
            },
            chain_id=settings.chain_id,
            gas_limit=settings.gas_limit,
        )

    @property
    def address(self) -> str:
        """Fisher account address."""
        if not self.account:
            raise ValueError("No private key configured")
        return self.account.address

    # ------------------------------------------------------------------
    # Endpoint failover
    # ------------------------------------------------------------------

    def _rotate_endpoint(self) -> None:
        self._endpoint = (self._endpoint + 1) % len(self.rpc_urls)
        url = self.rpc_urls[self._endpoint]
        self.w3 = Web3(Web3.HTTPProvider(url))
        logger.warning("rpc_endpoint_rotated", rpc_url=url)

    def _with_failover(self, fn: Callable[[], T]) -> T:
        """Run `fn` against each endpoint in turn until one answers."""
        last_error: Optional[Exception] = None
        for _ in range(len(self.rpc_urls)):
            try:
                return fn()
            except OSError as e:
                last_error = e
                logger.warning(
                    "rpc_request_failed",
                    rpc_url=self.rpc_urls[self._endpoint],
                    error=str(e),
                )
                if len(self.rpc_urls) > 1:
                    self._rotate_endpoint()
        raise TransientChainError(str(last_error))

    def _contract(self, target: str) -> Any:
        if target == "evvm":
            return self.w3.eth.contract(address=self.evvm_address, abi=EVVM_ABI)
        if target == "staking":
            return self.w3.eth.contract(address=self.staking_address, abi=STAKING_ABI)
        kind = FaucetKind(target)
        return self.w3.eth.contract(address=self.faucet_addresses[kind], abi=FAUCET_ABIS[kind])

    def _function(self, call: ContractCall) -> Any:
        return self._contract(call.target).get_function_by_name(call.function_name)(*call.args)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def is_reachable(self) -> bool:
        """Check that some configured endpoint answers."""
        try:
            self._with_failover(lambda: self.w3.eth.block_number)
            return True
        except TransientChainError:
            return False

    def get_evvm_id(self) -> int:
        return self._with_failover(
            lambda: self._contract("evvm").functions.getEvvmID().call()
        )

    def get_sync_nonce(self, user: str) -> int:
        """Next sequential nonce the ledger expects from `user`."""
        return self._with_failover(
            lambda: self._contract("evvm")
            .functions.getNextCurrentSyncNonce(to_call_address(user))
            .call()
        )

    def is_async_nonce_used(self, user: str, nonce: int) -> bool:
        return self._with_failover(
            lambda: self._contract("evvm")
            .functions.getIfUsedAsyncNonce(to_call_address(user), nonce)
            .call()
        )

    def is_faucet_nonce_used(self, faucet: FaucetKind, claimer: str, nonce: int) -> bool:
        return self._with_failover(
            lambda: self._contract(faucet.value)
            .functions.isNonceUsed(to_call_address(claimer), nonce)
            .call()
        )

    def can_claim(self, faucet: FaucetKind, claimer: str) -> tuple[bool, int]:
        """Faucet eligibility and remaining cooldown in seconds."""
        eligible, remaining = self._with_failover(
            lambda: self._contract(faucet.value)
            .functions.canClaim(to_call_address(claimer))
            .call()
        )
        return bool(eligible), int(remaining)

    def get_balance(self, user: str, token: str) -> int:
        """Ledger balance of `user` for `token`."""
        return self._with_failover(
            lambda: self._contract("evvm")
            .functions.getBalance(to_call_address(user), to_call_address(token))
            .call()
        )

    def is_staker(self, user: str) -> bool:
        return self._with_failover(
            lambda: self._contract("evvm")
            .functions.isAddressStaker(to_call_address(user))
            .call()
        )

    def get_golden_fisher(self) -> str:
        return self._with_failover(
            lambda: self._contract("staking").functions.getGoldenFisher().call()
        )

    # ------------------------------------------------------------------
    # Relayed calls
    # ------------------------------------------------------------------

    def simulate(self, call: ContractCall) -> Optional[str]:
        """
        Dry-run the call with eth_call.

        Returns:
            The revert reason if the ledger would reject it, else None
        """
        try:
            self._with_failover(
                lambda: self._function(call).call({"from": self.address, "gas": self.gas_limit})
            )
        except ContractLogicError as e:
            return getattr(e, "message", None) or str(e)
        return None

    def sign_submission(self, call: ContractCall) -> SignedSubmission:
        """Build and sign the relay transaction once, pinning the fisher nonce."""
        if not self.account:
            raise ValueError("No private key configured")

        def build() -> dict[str, Any]:
            nonce = self.w3.eth.get_transaction_count(self.account.address, "pending")
            gas_price = self.w3.eth.gas_price
            return self._function(call).build_transaction(
                {
                    "from": self.account.address,
                    "nonce": nonce,
                    "gasPrice": gas_price,
                    "gas": self.gas_limit,
                    "chainId": self.chain_id,
                }
            )

        tx = self._with_failover(build)
        signed = self.account.sign_transaction(tx)
        return SignedSubmission(
            raw_transaction=bytes(signed.raw_transaction),
            tx_hash=Web3.to_hex(signed.hash),
            function_name=call.function_name,
        )

    def broadcast(self, submission: SignedSubmission, resend: bool = False) -> str:
        """
        Send a signed transaction.

        `resend` marks a repeat of bytes an earlier attempt may already have
        delivered. Only then does "nonce too low" mean the transaction is in;
        on a first send it means the account nonce went to another
        transaction and these bytes can never be mined.

        Raises:
            TransientChainError: the node could not be reached
            SubmissionRejected: the node refused the transaction
        """
        sends = 0

        def send() -> Any:
            nonlocal sends
            sends += 1
            return self.w3.eth.send_raw_transaction(submission.raw_transaction)

        try:
            tx_hash = self._with_failover(send)
        except (ValueError, Web3Exception) as e:
            message = str(e).lower()
            repeated = resend or sends > 1
            if any(marker in message for marker in ALREADY_ACCEPTED_MARKERS) or (
                repeated and NONCE_TOO_LOW_MARKER in message
            ):
                logger.info(
                    "relay_tx_already_accepted",
                    tx_hash=submission.tx_hash,
                    reply=str(e),
                )
                return submission.tx_hash
            raise SubmissionRejected(str(e)) from e

        logger.info(
            "relay_tx_sent",
            tx_hash=Web3.to_hex(tx_hash),
            function=submission.function_name,
        )
        return Web3.to_hex(tx_hash)

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> ChainReceipt:
        """
        Wait for inclusion.

        Raises:
            ConfirmationTimeout: nothing mined within `timeout` seconds
        """
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except TimeExhausted as e:
            raise ConfirmationTimeout(tx_hash, timeout) from e

        return ChainReceipt(
            status=receipt["status"],
            gas_used=receipt["gasUsed"],
            block_number=receipt["blockNumber"],
            effective_gas_price=receipt.get("effectiveGasPrice"),
        )

    def revert_reason(self, call: ContractCall, block_number: int) -> Optional[str]:
        """
        Replay a reverted call to recover the revert reason.

        The replay runs against the state after `block_number`, not the state
        the transaction saw mid-block. A revert caused by an earlier
        transaction in the same block (a consumed nonce, a drained balance)
        reproduces there; one that depended on state a later transaction in
        the block changed may report a different reason or none.
        """
        try:
            self._function(call).call({"from": self.address}, block_identifier=block_number)
        except ContractLogicError as e:
            return getattr(e, "message", None) or str(e)
        except Exception as e:
            logger.debug("revert_reason_unavailable", error=str(e))
        return None
