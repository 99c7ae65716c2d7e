from __future__ import annotations

from typing import Dict, List

import pytest

from btc_anchoring.config import AnchoringConfig
from btc_anchoring.errors import NoPriorAnchor, TransitionPending
from btc_anchoring.lect import Lect
from btc_anchoring.proposal import build_proposal
from btc_anchoring.schema import AnchoringSchema
from btc_anchoring.storage import MemoryStorage
from btc_anchoring.transactions import classify
from btc_anchoring.transition import AnchoringStage, AnchoringState, TransitionManager
from conftest import block_hash, build_validators

OLD = build_validators(4).config()
NEW = build_validators(3, offset=10).config(seed=1)
SAME_WALLET = AnchoringConfig(
    validators=OLD.validators, funding_tx=OLD.funding_tx, fee=2000, frequency=10, utxo_confirmations=2
)
OLD_FUNDING = classify(OLD.funding_tx)
NEW_FUNDING = classify(NEW.funding_tx)


class StubRPC:
    def __init__(self, confirmations: Dict[str, int] | None = None) -> None:
        self.confirmations = confirmations or {}
        self.imported: List[tuple] = []

    def get_transaction_confirmations(self, txid: str):
        return self.confirmations.get(txid)

    def importaddress(self, address, label="", rescan=False, p2sh=False):
        self.imported.append((address, label, rescan, p2sh))


def _schema(following: AnchoringConfig | None = None, actual_from: int = 100) -> AnchoringSchema:
    schema = AnchoringSchema(MemoryStorage())
    schema.create_genesis_config(OLD)
    if following is not None:
        schema.schedule_config(following, actual_from)
    return schema


def _old_anchor(height: int = 0):
    return build_proposal(OLD_FUNDING, OLD.multisig(), OLD.fee, height, block_hash(height))


def _transfer(lect_tx):
    return build_proposal(
        lect_tx, OLD.multisig(), OLD.fee, 90, block_hash(90), out_script=NEW.multisig().script_pubkey
    )


def test_genesis_state_is_anchoring() -> None:
    manager = TransitionManager(_schema(), StubRPC())

    state = manager.current_state(5, Lect(OLD_FUNDING, 4))

    assert state.stage is AnchoringStage.ANCHORING
    assert state.watched_configs() == [OLD]
    TransitionManager.guard_regular_proposal(state)


def test_scheduled_config_with_new_wallet_starts_transition() -> None:
    manager = TransitionManager(_schema(NEW), StubRPC())

    state = manager.current_state(50, Lect(OLD_FUNDING, 4))

    assert state.stage is AnchoringStage.TRANSITION
    assert state.following == NEW
    assert state.watched_configs() == [OLD, NEW]
    with pytest.raises(TransitionPending):
        TransitionManager.guard_regular_proposal(state)


def test_scheduled_config_with_same_wallet_keeps_anchoring() -> None:
    manager = TransitionManager(_schema(SAME_WALLET), StubRPC())

    assert manager.current_state(50, Lect(OLD_FUNDING, 4)).stage is AnchoringStage.ANCHORING


def test_transfer_proposal_pays_following_wallet() -> None:
    schema = _schema(NEW)
    manager = TransitionManager(schema, StubRPC())
    anchor = _old_anchor()
    state = manager.current_state(50, Lect(anchor, 4))

    transfer = manager.transfer_proposal(state, Lect(anchor, 4), 50, block_hash(50))

    assert transfer is not None
    assert transfer.prev_out(0) == (anchor.txid, 0)
    assert transfer.has_output(NEW.multisig().script_pubkey)
    assert manager.transfer_proposal(state, Lect(transfer, 4), 50, block_hash(50)) is None


def test_transfer_proposal_outside_transition_is_rejected() -> None:
    manager = TransitionManager(_schema(), StubRPC())
    state = AnchoringState(AnchoringStage.ANCHORING, OLD)

    with pytest.raises(ValueError):
        manager.transfer_proposal(state, Lect(OLD_FUNDING, 4), 0, block_hash(0))


def test_unconfirmed_transfer_waits_after_switch() -> None:
    schema = _schema(NEW)
    transfer = _transfer(_old_anchor())
    schema.add_known_tx(_old_anchor())
    rpc = StubRPC({transfer.txid: 1})
    manager = TransitionManager(schema, rpc)

    waiting = manager.current_state(100, Lect(transfer, 3))
    rpc.confirmations[transfer.txid] = 2
    ready = manager.current_state(100, Lect(transfer, 3))

    assert waiting.stage is AnchoringStage.WAITING
    assert waiting.previous == OLD
    assert waiting.watched_configs() == [NEW, OLD]
    with pytest.raises(TransitionPending):
        TransitionManager.guard_regular_proposal(waiting)
    assert ready.stage is AnchoringStage.ANCHORING


def test_missing_transfer_enters_recovery() -> None:
    schema = _schema(NEW)
    manager = TransitionManager(schema, StubRPC())

    state = manager.current_state(100, Lect(_old_anchor(), 3))

    assert state.stage is AnchoringStage.RECOVERING
    assert state.actual == NEW


def test_recovery_proposal_spends_new_funding() -> None:
    schema = _schema(NEW)
    old_lect = Lect(_old_anchor(), 3)
    manager = TransitionManager(schema, StubRPC({NEW_FUNDING.txid: 5}))
    state = manager.current_state(100, old_lect)

    proposal = manager.recovery_proposal(state, old_lect, 100, block_hash(100))

    assert proposal.prev_out(0) == (NEW_FUNDING.txid, 0)
    assert proposal.has_output(NEW.multisig().script_pubkey)
    assert proposal.anchor.prev_tx_chain == old_lect.txid
    assert proposal.anchor.height == 100


def test_recovery_waits_for_funding_confirmations() -> None:
    schema = _schema(NEW)
    old_lect = Lect(_old_anchor(), 3)
    manager = TransitionManager(schema, StubRPC({NEW_FUNDING.txid: 1}))
    state = manager.current_state(100, old_lect)

    with pytest.raises(TransitionPending):
        manager.recovery_proposal(state, old_lect, 100, block_hash(100))


def test_recovery_without_funding_needs_new_config() -> None:
    unfunded = AnchoringConfig(validators=NEW.validators, frequency=10, utxo_confirmations=2)
    schema = _schema(unfunded)
    old_lect = Lect(_old_anchor(), 3)
    manager = TransitionManager(schema, StubRPC())
    state = manager.current_state(100, old_lect)

    with pytest.raises(NoPriorAnchor):
        manager.recovery_proposal(state, old_lect, 100, block_hash(100))


def test_ensure_imported_registers_address_once() -> None:
    rpc = StubRPC()
    manager = TransitionManager(_schema(NEW), rpc)

    manager.ensure_imported(NEW.multisig().address)
    manager.ensure_imported(NEW.multisig().address)

    assert rpc.imported == [(NEW.multisig().address, "multisig", False, False)]


def test_schedule_config_must_move_forward() -> None:
    schema = _schema(NEW, actual_from=100)

    with pytest.raises(ValueError):
        schema.schedule_config(SAME_WALLET, 100)
    assert schema.following_config(10) == (100, NEW)
    assert schema.following_config(100) is None
    assert schema.previous_config(150) == OLD
    assert schema.actual_config(99) == OLD


def test_config_change_on_same_wallet_does_not_wait_for_transfer() -> None:
    schema = _schema(SAME_WALLET, actual_from=100)
    schema.add_known_tx(OLD_FUNDING)
    manager = TransitionManager(schema, StubRPC())

    state = manager.current_state(100, Lect(_old_anchor(), 4))

    assert state.stage is AnchoringStage.ANCHORING
    assert state.actual == SAME_WALLET
    assert state.previous == OLD
    TransitionManager.guard_regular_proposal(state)
