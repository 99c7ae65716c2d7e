"""Construction of unsigned anchoring proposals."""

from __future__ import annotations

import logging
from typing import Iterable

from bitcoin.core import (
    CMutableTransaction,
    CMutableTxIn,
    CMutableTxOut,
    COutPoint,
    CTransaction,
    lx,
)
from bitcoin.core.script import CScript

from .errors import InsufficientFunds, NoPriorAnchor
from .transactions import DUST_LIMIT, AnchoringTx, BitcoinTx, FundingTx, Payload, TxKind
from .wallet import MultisigAddress

logger = logging.getLogger(__name__)


def _spendable_output(tx: BitcoinTx, multisig: MultisigAddress) -> tuple[int, int]:
    """Return ``(vout, value)`` of the output of ``tx`` the wallet can spend."""

    if tx.kind() is TxKind.ANCHORING:
        return 0, tx.output_value(0)
    index = tx.find_out(multisig.script_pubkey)
    if index is None:
        raise NoPriorAnchor(f"Transaction {tx.txid} pays nothing to {multisig.address}")
    return index, tx.output_value(index)


def build_proposal(
    prev_tx: BitcoinTx | None,
    multisig: MultisigAddress,
    fee: int,
    height: int,
    block_hash: str,
    additional_funds: Iterable[FundingTx] = (),
    out_script: CScript | None = None,
    prev_tx_chain: str | None = None,
) -> AnchoringTx:
    """Build the next unsigned anchoring transaction.

    ``prev_tx`` is the agreed LECT (or the funding transaction at genesis).
    Outputs of ``additional_funds`` paying ``multisig`` are added as extra
    inputs. Funds move to ``out_script``, which defaults to the wallet's own
    P2SH script; transfers to a new wallet pass the new script instead.
    """

    if prev_tx is None:
        raise NoPriorAnchor("No LECT or funding transaction to build a proposal from")

    spends: list[tuple[str, int, int]] = []
    vout, value = _spendable_output(prev_tx, multisig)
    spends.append((prev_tx.txid, vout, value))
    for funding in additional_funds:
        if funding.txid == prev_tx.txid:
            continue
        vout, value = _spendable_output(funding, multisig)
        spends.append((funding.txid, vout, value))

    total = sum(value for _, _, value in spends)
    change = total - fee
    if change < DUST_LIMIT:
        raise InsufficientFunds(total, fee, DUST_LIMIT)

    payload = Payload(height=height, block_hash=block_hash, prev_tx_chain=prev_tx_chain)
    tx = CMutableTransaction(
        [CMutableTxIn(COutPoint(lx(txid), vout)) for txid, vout, _ in spends],
        [
            CMutableTxOut(change, out_script if out_script is not None else multisig.script_pubkey),
            CMutableTxOut(0, payload.to_script()),
        ],
    )
    proposal = AnchoringTx(CTransaction.from_tx(tx))
    logger.debug(
        "Built proposal %s: height=%d inputs=%d amount=%d fee=%d",
        proposal.nid,
        height,
        len(spends),
        change,
        fee,
    )
    return proposal
