"""Per-block driver of the anchoring protocol."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Mapping, Optional, Set, Union

from .config import AnchoringConfig, AnchoringNodeConfig, ConfigurationError
from .lect import Lect, LectStatus, LectTracker, LectUpdate
from .messages import AnchoringTransaction, MsgAnchoringSignature, service_public_key
from .proposal import build_proposal
from .rpc_client import RPC_TRANSACTION_ALREADY_IN_CHAIN, AnchoringRpc, RPCError
from .schema import AnchoringSchema
from .signatures import collect_signatures
from .storage import Storage
from .transactions import AnchoringTx, TxKind, classify
from .transition import AnchoringStage, AnchoringState, TransitionManager

logger = logging.getLogger(__name__)


@dataclass
class NodeState:
    """What the host ledger hands the engine for one committed block."""

    height: int
    storage: Storage
    block_hashes: Union[Mapping[int, str], Callable[[int], str]]
    validator_id: Optional[int] = None
    transactions: List[AnchoringTransaction] = field(default_factory=list)

    def block_hash(self, height: int) -> str:
        if callable(self.block_hashes):
            return self.block_hashes(height)
        return self.block_hashes[height]

    def add_transaction(self, tx: AnchoringTransaction) -> None:
        self.transactions.append(tx)


class ProposalStage(Enum):
    NONE = "none"
    PENDING = "pending"
    FINALIZED = "finalized"
    BROADCAST = "broadcast"
    CONFIRMED = "confirmed"


@dataclass
class ProposalState:
    stage: ProposalStage = ProposalStage.NONE
    proposal: Optional[AnchoringTx] = None
    config: Optional[AnchoringConfig] = None
    base_txid: Optional[str] = None
    signed: Optional[AnchoringTx] = None


class AnchoringHandler:
    """Advance the anchoring state machine once per committed ledger block.

    One handler instance exists per node and is driven non-reentrantly by the
    host's commit callback. Cross-validator coordination happens only through
    the protocol transactions it submits via :meth:`NodeState.add_transaction`.
    """

    def __init__(self, client: AnchoringRpc, node: AnchoringNodeConfig) -> None:
        if not node.service_key:
            raise ConfigurationError("node.service_key is required to authenticate anchoring messages")
        self.client = client
        self.node = node
        self.service_public_key = service_public_key(node.service_key)
        self.proposal = ProposalState()
        self.imported: Set[str] = set()
        self.pending_imports: Set[str] = set()

    def status(self) -> dict[str, Any]:
        """Read-only summary for status queries."""

        return {
            "stage": self.proposal.stage.value,
            "proposal": self.proposal.proposal.nid if self.proposal.proposal else None,
            "base": self.proposal.base_txid,
            "signed": self.proposal.signed.txid if self.proposal.signed else None,
        }

    def require_import(self, address: str) -> None:
        self.pending_imports.add(address)

    def handle_commit(self, state: NodeState) -> None:
        logger.debug("Handle commit, height=%d", state.height)
        if state.validator_id is None:
            return

        self._retry_imports()
        schema = AnchoringSchema(state.storage)
        transitions = TransitionManager(schema, self.client, imported=self.imported)
        actual = schema.actual_config(state.height)
        tracker = LectTracker(
            schema,
            actual,
            fetch_tx=self.client.get_transaction,
            walk_limit=self.node.lect_walk_limit,
        )
        lect = tracker.current()
        anchoring_state = transitions.current_state(state.height, lect)

        if state.height % self.node.check_lect_frequency == 0:
            if self._update_our_lect(state, tracker, transitions, anchoring_state):
                return

        if lect is None:
            divergence = tracker.divergence()
            if divergence is not None:
                logger.error(
                    "LECT diverged: validators %s disagree with %s beyond the fault threshold %d (votes=%s)",
                    divergence.dissenting,
                    divergence.leader,
                    divergence.fault_threshold,
                    divergence.votes,
                )
            else:
                logger.warning("Unable to reach consensus in a lect (votes=%s)", tracker.votes())
            return

        self._advance_lifecycle(lect, actual)
        if self.proposal.stage is ProposalStage.PENDING:
            self._try_finalize_proposal(state, schema)
        elif self.proposal.stage is ProposalStage.FINALIZED:
            self._broadcast(state, schema)
        elif self._can_create(lect):
            self._try_create_proposal(state, transitions, anchoring_state, lect)

    def _retry_imports(self) -> None:
        for address in sorted(self.pending_imports):
            self.client.importaddress(address, "multisig", False, False)
            self.pending_imports.discard(address)
            self.imported.add(address)
            logger.info("Imported multisig address %s", address)

    # LECT -----------------------------------------------------------------

    def _update_our_lect(
        self,
        state: NodeState,
        tracker: LectTracker,
        transitions: TransitionManager,
        anchoring_state: AnchoringState,
    ) -> bool:
        configs = anchoring_state.watched_configs()
        if anchoring_state.following is not None:
            transitions.ensure_imported(anchoring_state.following.multisig().address)
        addresses = [cfg.multisig().address for cfg in configs]
        scripts = [cfg.multisig().script_pubkey for cfg in configs]

        observed = self.client.unspent_transactions(addresses)
        update = tracker.reconcile(state.validator_id, observed, scripts)
        if update is None:
            return False
        logger.info("LECT ====== txid=%s, total_count=%d", update.tx.txid, update.lect_count + 1)
        msg = update.to_message(self.service_public_key).sign(self.node.service_key)
        state.add_transaction(msg)
        return True

    # Proposal lifecycle ---------------------------------------------------

    def _advance_lifecycle(self, lect: Lect, actual: AnchoringConfig) -> None:
        current = self.proposal
        if current.stage in (ProposalStage.PENDING, ProposalStage.FINALIZED):
            if lect.txid != current.base_txid or current.config != actual:
                logger.info("Proposal %s is outdated, dropping it", current.proposal.nid)
                self.proposal = ProposalState()
        elif current.stage is ProposalStage.BROADCAST:
            if lect.txid == current.signed.txid:
                confirmations = self.client.get_transaction_confirmations(current.signed.txid)
                if lect.status(confirmations, actual.utxo_confirmations) is LectStatus.CONFIRMED:
                    logger.info("Anchor %s confirmed (%d confirmations)", lect.txid, confirmations)
                    current.stage = ProposalStage.CONFIRMED
            elif lect.txid != current.base_txid:
                logger.warning(
                    "Broadcast anchor %s was superseded by lect %s", current.signed.txid, lect.txid
                )
                self.proposal = ProposalState()

    def _can_create(self, lect: Lect) -> bool:
        current = self.proposal
        if current.stage in (ProposalStage.NONE, ProposalStage.CONFIRMED):
            return True
        return current.stage is ProposalStage.BROADCAST and lect.txid == current.signed.txid

    def _try_create_proposal(
        self,
        state: NodeState,
        transitions: TransitionManager,
        anchoring_state: AnchoringState,
        lect: Lect,
    ) -> None:
        cfg = anchoring_state.actual
        height = cfg.nearest_anchoring_height(state.height)
        stage = anchoring_state.stage

        if stage is AnchoringStage.TRANSITION:
            proposal = transitions.transfer_proposal(
                anchoring_state, lect, height, state.block_hash(height)
            )
        elif stage is AnchoringStage.RECOVERING:
            proposal = transitions.recovery_proposal(
                anchoring_state, lect, height, state.block_hash(height)
            )
        else:
            transitions.guard_regular_proposal(anchoring_state)
            proposal = self._regular_proposal(cfg, lect, height, state)
        if proposal is None:
            return

        self.proposal = ProposalState(
            stage=ProposalStage.PENDING,
            proposal=proposal,
            config=cfg,
            base_txid=lect.txid,
        )
        self._sign_proposal(state, proposal, cfg)

    def _regular_proposal(
        self, cfg: AnchoringConfig, lect: Lect, height: int, state: NodeState
    ) -> Optional[AnchoringTx]:
        if lect.tx.kind() is TxKind.ANCHORING:
            if AnchoringTx(lect.tx.tx).anchor.height >= height:
                return None
        else:
            confirmations = self.client.get_transaction_confirmations(lect.txid)
            if confirmations is None or confirmations < cfg.utxo_confirmations:
                logger.info(
                    "Funding transaction %s has %s confirmations, waiting for %d",
                    lect.txid,
                    confirmations,
                    cfg.utxo_confirmations,
                )
                return None

        multisig = cfg.multisig()
        additional = []
        if cfg.funding_tx:
            funding = classify(cfg.funding_tx)
            if funding.txid != lect.txid:
                unspent = {item.txid for item in self.client.unspent_transactions([multisig.address])}
                if funding.txid in unspent:
                    additional.append(funding)
        return build_proposal(
            lect.tx,
            multisig,
            cfg.fee,
            height,
            state.block_hash(height),
            additional_funds=additional,
        )

    def _sign_proposal(self, state: NodeState, proposal: AnchoringTx, cfg: AnchoringConfig) -> None:
        multisig = cfg.multisig()
        private_key = self.node.private_key_for(multisig.address)
        if private_key is None:
            logger.warning("No private key for wallet %s; not signing %s", multisig.address, proposal.nid)
            return
        for input_index in proposal.inputs():
            signature = proposal.sign_input(multisig.redeem_script, input_index, private_key)
            msg = MsgAnchoringSignature(
                from_key=self.service_public_key,
                validator=state.validator_id,
                tx=proposal,
                input=input_index,
                signature=signature,
            ).sign(self.node.service_key)
            state.add_transaction(msg)
        logger.info(
            "Signed proposal %s for height %d (%d inputs)",
            proposal.nid,
            proposal.anchor.height,
            len(proposal.inputs()),
        )

    def _try_finalize_proposal(self, state: NodeState, schema: AnchoringSchema) -> None:
        current = self.proposal
        proposal = current.proposal
        msgs = schema.signatures(proposal.nid)
        signatures = collect_signatures(proposal, current.config, msgs)
        if signatures is None:
            logger.debug("Proposal %s is waiting for signatures (%d received)", proposal.nid, len(msgs))
            return
        current.signed = proposal.finalize(current.config.multisig().redeem_script, signatures)
        current.stage = ProposalStage.FINALIZED
        self._broadcast(state, schema)

    def _broadcast(self, state: NodeState, schema: AnchoringSchema) -> None:
        current = self.proposal
        signed = current.signed
        try:
            self.client.send_transaction(signed)
        except RPCError as exc:
            if exc.code != RPC_TRANSACTION_ALREADY_IN_CHAIN:
                raise
            logger.info("Anchor %s is already in the block chain", signed.txid)
        current.stage = ProposalStage.BROADCAST
        logger.info(
            "ANCHORING ====== anchored_height=%d, txid=%s, remaining_funds=%d",
            signed.anchor.height,
            signed.txid,
            signed.amount,
        )
        lect_count = len(schema.lects(state.validator_id))
        msg = LectUpdate(
            validator=state.validator_id, tx=signed, lect_count=lect_count
        ).to_message(self.service_public_key).sign(self.node.service_key)
        state.add_transaction(msg)
