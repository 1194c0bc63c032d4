"""
Per-cycle execution: balance and credential checks, batch building,
submission with per-account nonce serialization, and recording.
"""

from .nonce_manager import NonceManager, get_nonce_manager
from .orchestrator import ExecutionOrchestrator
from .tx_builder import BatchBuilder, OperationKind, SubOperation

__all__ = [
    "BatchBuilder",
    "ExecutionOrchestrator",
    "NonceManager",
    "OperationKind",
    "SubOperation",
    "get_nonce_manager",
]
