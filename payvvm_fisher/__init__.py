"""
PayVVM Fisher

Collects signed PayVVM authorizations (payments, batch payments, faucet
claims), verifies them against EVVM ledger state and relays them on-chain,
earning the priority fee.

Usage:
    # Accept submissions over HTTP
    payvvm-fisher serve

    # Run the relay worker
    payvvm-fisher run

    # Run one poll cycle (for testing)
    payvvm-fisher run --once

    # Print the message a sender has to sign
    payvvm-fisher message body.json --kind pay --evvm-id 1000
"""

__version__ = "0.1.0"

from .config import RelayerConfig, Settings
from .db import SubmissionPool
from .evm import EvmClient
from .executor import Executor
from .models import Authorization, ExecutionOutcome, NonceMode, OperationKind
from .relayer import FisherRelayer
from .signer import sign_message, verify_signature

__all__ = [
    "__version__",
    "RelayerConfig",
    "Settings",
    "SubmissionPool",
    "EvmClient",
    "Executor",
    "Authorization",
    "ExecutionOutcome",
    "NonceMode",
    "OperationKind",
    "FisherRelayer",
    "sign_message",
    "verify_signature",
]
