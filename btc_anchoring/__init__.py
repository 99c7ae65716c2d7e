"""Bitcoin anchoring service package."""

from .config import AnchoringConfig, AnchoringNodeConfig, ConfigurationError, RPCConfig, majority_count
from .errors import AnchoringError, InsufficientFunds, MessageError, NoPriorAnchor, TransitionPending
from .handler import AnchoringHandler, NodeState, ProposalStage
from .lect import Lect, LectTracker, LectUpdate
from .messages import MsgAnchoringSignature, MsgAnchoringUpdateLatest, message_from_raw
from .proposal import build_proposal
from .rpc_client import AnchoringRpc, RPCError, RPCTransportError
from .service import AnchoringService
from .signatures import collect_signatures
from .storage import MemoryStorage, SQLiteStorage, Storage, StorageError
from .transactions import AnchoringTx, BitcoinTx, FundingTx, Payload, TxKind
from .transition import AnchoringStage, TransitionManager
from .wallet import MultisigAddress, derive_multisig

__all__ = [
    "AnchoringConfig",
    "AnchoringNodeConfig",
    "ConfigurationError",
    "RPCConfig",
    "majority_count",
    "AnchoringError",
    "InsufficientFunds",
    "MessageError",
    "NoPriorAnchor",
    "TransitionPending",
    "AnchoringHandler",
    "NodeState",
    "ProposalStage",
    "Lect",
    "LectTracker",
    "LectUpdate",
    "MsgAnchoringSignature",
    "MsgAnchoringUpdateLatest",
    "message_from_raw",
    "build_proposal",
    "AnchoringRpc",
    "RPCError",
    "RPCTransportError",
    "AnchoringService",
    "collect_signatures",
    "MemoryStorage",
    "SQLiteStorage",
    "Storage",
    "StorageError",
    "AnchoringTx",
    "BitcoinTx",
    "FundingTx",
    "Payload",
    "TxKind",
    "AnchoringStage",
    "TransitionManager",
    "MultisigAddress",
    "derive_multisig",
]
