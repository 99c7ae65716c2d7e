"""Anchoring state machine and validator-set transitions.

A validator-set change produces a new wallet. While a following config with a
different address is scheduled, the old wallet's funds are moved to the new
address by a transfer anchor. After the switch, anchoring waits until the
transfer is confirmed; when the transfer never happened, anchoring recovers
from the new config's funding transaction instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Set

from .config import AnchoringConfig
from .errors import NoPriorAnchor, TransitionPending
from .lect import Lect
from .proposal import build_proposal
from .rpc_client import AnchoringRpc
from .schema import AnchoringSchema
from .transactions import AnchoringTx, classify

logger = logging.getLogger(__name__)


class AnchoringStage(Enum):
    ANCHORING = "anchoring"
    TRANSITION = "transition"
    RECOVERING = "recovering"
    WAITING = "waiting"


@dataclass(frozen=True)
class AnchoringState:
    stage: AnchoringStage
    actual: AnchoringConfig
    following: Optional[AnchoringConfig] = None
    previous: Optional[AnchoringConfig] = None

    def watched_configs(self) -> List[AnchoringConfig]:
        configs = [self.actual]
        if self.stage is AnchoringStage.TRANSITION and self.following is not None:
            configs.append(self.following)
        elif self.previous is not None:
            configs.append(self.previous)
        return configs


class TransitionManager:
    """Decide the anchoring stage and build transition-specific proposals."""

    def __init__(
        self,
        schema: AnchoringSchema,
        client: AnchoringRpc,
        imported: Optional[Set[str]] = None,
    ) -> None:
        self.schema = schema
        self.client = client
        self.imported = imported if imported is not None else set()

    def current_state(self, height: int, lect: Optional[Lect]) -> AnchoringState:
        actual = self.schema.actual_config(height)
        previous = self.schema.previous_config(height)
        following = self.schema.following_config(height)

        if following is not None:
            _, next_cfg = following
            if next_cfg.multisig().address != actual.multisig().address:
                return AnchoringState(AnchoringStage.TRANSITION, actual, following=next_cfg, previous=previous)

        if lect is None or previous is None:
            return AnchoringState(AnchoringStage.ANCHORING, actual, previous=previous)

        if not lect.tx.has_output(actual.multisig().script_pubkey):
            return AnchoringState(AnchoringStage.RECOVERING, actual, previous=previous)

        if previous.multisig().address == actual.multisig().address:
            return AnchoringState(AnchoringStage.ANCHORING, actual, previous=previous)

        if self._is_transfer(lect, previous):
            confirmations = self.client.get_transaction_confirmations(lect.txid)
            if confirmations is None or confirmations < actual.utxo_confirmations:
                logger.info(
                    "Waiting for transfer %s to reach %d confirmations (now %s)",
                    lect.txid,
                    actual.utxo_confirmations,
                    confirmations,
                )
                return AnchoringState(AnchoringStage.WAITING, actual, previous=previous)

        return AnchoringState(AnchoringStage.ANCHORING, actual, previous=previous)

    def _is_transfer(self, lect: Lect, previous: AnchoringConfig) -> bool:
        prev_tx = self.schema.known_tx(lect.tx.prev_hash(0))
        return prev_tx is not None and prev_tx.has_output(previous.multisig().script_pubkey)

    @staticmethod
    def guard_regular_proposal(state: AnchoringState) -> None:
        if state.stage is not AnchoringStage.ANCHORING:
            raise TransitionPending(
                f"Regular anchoring is paused while the service is {state.stage.value}"
            )

    def ensure_imported(self, address: str) -> None:
        """Register ``address`` as watch-only with the node, once per process."""

        if address in self.imported:
            return
        self.client.importaddress(address, "multisig", False, False)
        self.imported.add(address)
        logger.info("Imported multisig address %s", address)

    def transfer_proposal(
        self, state: AnchoringState, lect: Lect, height: int, block_hash: str
    ) -> Optional[AnchoringTx]:
        """Build the anchor moving the old wallet's funds to the new address.

        Returns ``None`` once the agreed LECT already pays the new wallet.
        """

        if state.stage is not AnchoringStage.TRANSITION or state.following is None:
            raise ValueError("Transfer proposals are only built during a transition")
        target = state.following.multisig()
        if lect.tx.has_output(target.script_pubkey):
            logger.debug("Transfer %s already pays %s", lect.txid, target.address)
            return None
        return build_proposal(
            lect.tx,
            state.actual.multisig(),
            state.actual.fee,
            height,
            block_hash,
            out_script=target.script_pubkey,
        )

    def recovery_proposal(
        self, state: AnchoringState, lect: Lect, height: int, block_hash: str
    ) -> AnchoringTx:
        """Restart anchoring from the new config's funding transaction."""

        cfg = state.actual
        if not cfg.funding_tx:
            raise NoPriorAnchor(
                f"Wallet {cfg.multisig().address} has no funding transaction; "
                "supply one in the next anchoring config"
            )
        funding = classify(cfg.funding_tx)
        confirmations = self.client.get_transaction_confirmations(funding.txid)
        if confirmations is None or confirmations < cfg.utxo_confirmations:
            raise TransitionPending(
                f"Funding transaction {funding.txid} has {confirmations} confirmations, "
                f"need {cfg.utxo_confirmations}"
            )
        return build_proposal(
            funding,
            cfg.multisig(),
            cfg.fee,
            height,
            block_hash,
            prev_tx_chain=lect.txid,
        )
