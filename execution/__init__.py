# PATH: execution/__init__.py
"""
POLYARB execution layer.

- protector: MEV protection (delay, sandwich screen, gas premium, nonces, channel)
- executor: re-derive, gate, sign and submit
"""

from execution.protector import (
    CandidateTransaction,
    ExecutionProtector,
    NonceManager,
    ProtectedTransaction,
    SandwichSignal,
)
from execution.executor import (
    FlashLoanTransactionBuilder,
    LocalSigner,
    TradeExecutor,
    TransactionBuilder,
)

__all__ = [
    # Protector
    "CandidateTransaction",
    "ExecutionProtector",
    "NonceManager",
    "ProtectedTransaction",
    "SandwichSignal",
    # Executor
    "FlashLoanTransactionBuilder",
    "LocalSigner",
    "TradeExecutor",
    "TransactionBuilder",
]
