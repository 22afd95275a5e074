"""Concrete collaborators: escrow RPC, relayer, settlement rails, notifier."""

from claimsend.adapters.bridge import BridgeSettlementAdapter
from claimsend.adapters.escrow import JsonRpcEscrowVerifier
from claimsend.adapters.notifier import LoggingNotifier
from claimsend.adapters.relayer import ManagedRelayer, RelayerError, RelayerOutcomeUnknown
from claimsend.adapters.settlement import RelayerSettlementAdapter

__all__ = [
    "BridgeSettlementAdapter",
    "JsonRpcEscrowVerifier",
    "LoggingNotifier",
    "ManagedRelayer",
    "RelayerError",
    "RelayerOutcomeUnknown",
    "RelayerSettlementAdapter",
]
