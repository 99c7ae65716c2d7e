"""Host-ledger facing facade of the anchoring service."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

from .config import AnchoringConfig, AnchoringNodeConfig
from .errors import AnchoringError
from .handler import AnchoringHandler, NodeState
from .messages import ANCHORING_SERVICE, AnchoringTransaction, message_from_raw
from .rpc_client import AnchoringRpc, RPCError, RPCTransportError, format_rpc_hint
from .schema import AnchoringSchema
from .storage import Storage

logger = logging.getLogger(__name__)


class AnchoringService:
    """Glue between the host ledger's service callbacks and the engine.

    ``validator_service_keys`` lists the Ed25519 keys the host uses to
    authenticate each validator. When present, messages must come from the
    key registered for the validator index they claim.
    """

    service_id = ANCHORING_SERVICE

    def __init__(
        self,
        client: AnchoringRpc,
        genesis: AnchoringConfig,
        node: AnchoringNodeConfig,
        validator_service_keys: Optional[Sequence[str]] = None,
    ) -> None:
        self.client = client
        self.genesis = genesis
        self.handler = AnchoringHandler(client, node)
        self.validator_service_keys = list(validator_service_keys) if validator_service_keys else None
        if self.validator_service_keys is None:
            logger.warning(
                "No validator service keys configured; messages are not bound to the validator they claim"
            )

    def state_hash(self, storage: Storage) -> List[bytes]:
        return []

    def tx_from_raw(self, raw: bytes | str) -> AnchoringTransaction:
        return message_from_raw(raw)

    def verify(self, tx: AnchoringTransaction) -> bool:
        if not tx.verify_signature():
            return False
        if self.validator_service_keys is None:
            return True
        if not 0 <= tx.validator < len(self.validator_service_keys):
            return False
        return self.validator_service_keys[tx.validator] == tx.from_key

    def execute(self, tx: AnchoringTransaction, storage: Storage, height: int) -> None:
        tx.execute(AnchoringSchema(storage), height)

    def handle_genesis_block(self, storage: Storage) -> Dict[str, Any]:
        cfg = self.genesis
        address = cfg.multisig().address
        try:
            self.client.importaddress(address, "multisig", False, False)
            self.handler.imported.add(address)
        except (RPCError, RPCTransportError) as exc:
            logger.error("Unable to import multisig address %s: %s; retrying on commit", address, exc)
            self.handler.require_import(address)
        AnchoringSchema(storage).create_genesis_config(cfg)
        logger.info("Anchoring genesis: wallet %s, %d validators", address, len(cfg.validators))
        return cfg.to_dict()

    def handle_commit(self, state: NodeState) -> None:
        try:
            self.handler.handle_commit(state)
        except RPCError as exc:
            hint = format_rpc_hint(exc)
            logger.error(
                "Anchoring step failed at height %d: %s%s",
                state.height,
                exc,
                f" ({hint})" if hint else "",
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
        except RPCTransportError as exc:
            logger.error(
                "Anchoring step failed at height %d: %s",
                state.height,
                exc,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
        except AnchoringError as exc:
            logger.warning("Anchoring skipped at height %d: %s", state.height, exc)

    def status(self) -> Dict[str, Any]:
        return self.handler.status()
