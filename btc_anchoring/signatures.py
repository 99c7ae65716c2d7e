"""Aggregation of per-input signature contributions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

from .config import AnchoringConfig
from .transactions import AnchoringTx

if TYPE_CHECKING:
    from .messages import MsgAnchoringSignature


def collect_signatures(
    proposal: AnchoringTx,
    config: AnchoringConfig,
    msgs: Iterable["MsgAnchoringSignature"],
) -> Optional[Dict[int, List[bytes]]]:
    """Return per-input signatures once every input reaches the majority.

    Later contributions for the same (input, validator) slot replace earlier
    ones. Each input's list is ordered by validator index, which matches the
    key order of the redeem script, and truncated to the majority count.
    ``None`` means "not enough signatures yet"; it is not an error.
    """

    signatures: Dict[int, List[Optional[bytes]]] = {}
    for input_index in proposal.inputs():
        signatures[input_index] = [None] * len(config.validators)

    for msg in msgs:
        signatures[msg.input][msg.validator] = msg.signature

    majority_count = config.majority_count()

    # remove holes, keep validator order
    actual_signatures: Dict[int, List[bytes]] = {}
    for input_index, slots in signatures.items():
        present = [signature for signature in slots if signature is not None][:majority_count]
        if len(present) < majority_count:
            return None
        actual_signatures[input_index] = present
    return actual_signatures
