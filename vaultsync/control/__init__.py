"""
Control package.

Controllers that turn observed on-chain changes into corrective transactions.
Each controller is serialised by its own state machine.
"""

from vaultsync.control.best_chain_controller import BestChainConfig, BestChainController
from vaultsync.control.controller_state import ControllerState, ControllerStateMachine
from vaultsync.control.oracle_sync_controller import OracleSyncConfig, OracleSyncController
from vaultsync.control.rebalance_controller import RebalanceConfig, RebalanceController, RebalanceResult

__all__ = [
    "ControllerState",
    "ControllerStateMachine",
    "RebalanceConfig",
    "RebalanceController",
    "RebalanceResult",
    "BestChainConfig",
    "BestChainController",
    "OracleSyncConfig",
    "OracleSyncController",
]
