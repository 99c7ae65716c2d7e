"""Latest expected correct transaction (LECT) tracking.

Every validator keeps an append-only LECT history in the ledger. The agreed
LECT is the latest entry shared by a majority of validators. Validators never
write their history directly; they propose updates through consensus after
comparing their history with what their own Bitcoin node reports.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from bitcoin.core.script import CScript

from .config import AnchoringConfig
from .messages import MsgAnchoringUpdateLatest
from .rpc_client import ObservedTx
from .schema import AnchoringSchema
from .transactions import BitcoinTx, TxKind, classify

logger = logging.getLogger(__name__)

FetchTx = Callable[[str], Optional[BitcoinTx]]
TieBreaker = Callable[[Sequence[ObservedTx]], ObservedTx]


class LectStatus(Enum):
    FUNDING = "funding"
    BROADCAST = "broadcast"
    CONFIRMED = "confirmed"


@dataclass(frozen=True)
class Lect:
    """The agreed LECT and the number of validators backing it."""

    tx: BitcoinTx
    votes: int

    @property
    def txid(self) -> str:
        return self.tx.txid

    def status(self, confirmations: int | None, utxo_confirmations: int) -> LectStatus:
        if self.tx.kind() is TxKind.FUNDING:
            return LectStatus.FUNDING
        if confirmations is not None and confirmations >= utxo_confirmations:
            return LectStatus.CONFIRMED
        return LectStatus.BROADCAST


@dataclass(frozen=True)
class LectUpdate:
    """A LECT observation to be proposed through consensus."""

    validator: int
    tx: BitcoinTx
    lect_count: int

    def to_message(self, from_key: str) -> MsgAnchoringUpdateLatest:
        return MsgAnchoringUpdateLatest(
            from_key=from_key,
            validator=self.validator,
            tx=self.tx,
            lect_count=self.lect_count,
        )


@dataclass(frozen=True)
class LectDivergence:
    """Validators sit on competing branches and no branch can reach majority."""

    votes: Dict[str, int]
    leader: str
    dissenting: List[int] = field(default_factory=list)
    fault_threshold: int = 0


def lowest_txid(candidates: Sequence[ObservedTx]) -> ObservedTx:
    return min(candidates, key=lambda item: item.txid)


class LectTracker:
    """Compute the agreed LECT and reconcile it with the Bitcoin network."""

    def __init__(
        self,
        schema: AnchoringSchema,
        config: AnchoringConfig,
        fetch_tx: FetchTx | None = None,
        *,
        walk_limit: int = 100,
        tie_breaker: TieBreaker = lowest_txid,
    ) -> None:
        self.schema = schema
        self.config = config
        self.fetch_tx = fetch_tx
        self.walk_limit = walk_limit
        self.tie_breaker = tie_breaker

    def _latest(self) -> Dict[int, BitcoinTx]:
        latest: Dict[int, BitcoinTx] = {}
        for validator in range(len(self.config.validators)):
            tx = self.schema.lect(validator)
            if tx is not None:
                latest[validator] = tx
        return latest

    def votes(self) -> Dict[str, int]:
        return dict(Counter(tx.txid for tx in self._latest().values()))

    def current(self) -> Optional[Lect]:
        """Return the LECT shared by at least ``majority_count`` validators."""

        latest = self._latest()
        counts = Counter(tx.txid for tx in latest.values())
        if not counts:
            return None
        txid, votes = counts.most_common(1)[0]
        if votes < self.config.majority_count():
            return None
        tx = next(tx for tx in latest.values() if tx.txid == txid)
        return Lect(tx=tx, votes=votes)

    def our_lect(self, validator: int) -> Optional[BitcoinTx]:
        return self.schema.lect(validator)

    def divergence(self) -> Optional[LectDivergence]:
        """Report validators on branches that do not lead to the leading LECT.

        Validators whose LECT is an ancestor of the leader are only lagging
        and will catch up; those on other branches are dissenting. Divergence
        is reported when dissent exceeds the fault threshold.
        """

        latest = self._latest()
        counts = Counter(tx.txid for tx in latest.values())
        if not counts:
            return None
        leader_txid, votes = counts.most_common(1)[0]
        if votes >= self.config.majority_count():
            return None
        leader = next(tx for tx in latest.values() if tx.txid == leader_txid)
        ancestors = self._ancestors(leader)
        dissenting = [
            validator
            for validator, tx in sorted(latest.items())
            if tx.txid != leader_txid and tx.txid not in ancestors
        ]
        fault_threshold = len(self.config.validators) - self.config.majority_count()
        if len(dissenting) <= fault_threshold:
            return None
        return LectDivergence(
            votes=dict(counts),
            leader=leader_txid,
            dissenting=dissenting,
            fault_threshold=fault_threshold,
        )

    def _ancestors(self, tx: BitcoinTx) -> set[str]:
        ancestors: set[str] = set()
        current = tx
        for _ in range(self.walk_limit):
            if current.kind() is not TxKind.ANCHORING:
                break
            prev_id = current.prev_hash(0)
            ancestors.add(prev_id)
            prev = self._lookup(prev_id)
            if prev is None:
                break
            current = prev
        return ancestors

    def _lookup(self, txid: str) -> Optional[BitcoinTx]:
        known = self.schema.known_tx(txid)
        if known is not None:
            return known
        if self.fetch_tx is None:
            return None
        fetched = self.fetch_tx(txid)
        return classify(fetched) if fetched is not None else None

    def _trusted_txids(self, validator: int) -> set[str]:
        trusted = {tx.txid for tx in self.schema.lects(validator)}
        trusted |= self.schema.funding_txids()
        agreed = self.current()
        if agreed is not None:
            trusted.add(agreed.txid)
        return trusted

    def _chains_to_trusted(self, tx: BitcoinTx, trusted: set[str]) -> bool:
        if tx.txid in trusted:
            return True
        current = tx
        for _ in range(self.walk_limit):
            if current.kind() is not TxKind.ANCHORING:
                return False
            prev_id = current.prev_hash(0)
            if prev_id in trusted:
                return True
            prev = self._lookup(prev_id)
            if prev is None:
                return False
            current = prev
        logger.warning("Gave up walking the chain of %s after %d steps", tx.txid, self.walk_limit)
        return False

    def _still_known(self, tx: BitcoinTx, observed: Iterable[ObservedTx]) -> bool:
        if any(item.txid == tx.txid for item in observed):
            return True
        if self.fetch_tx is None:
            return False
        return self.fetch_tx(tx.txid) is not None

    def _select(self, pool: Sequence[ObservedTx]) -> ObservedTx:
        deepest = max(item.confirmations for item in pool)
        tied = [item for item in pool if item.confirmations == deepest]
        if len(tied) == 1:
            return tied[0]
        logger.warning(
            "Found %d competing anchors with %d confirmations: %s",
            len(tied),
            deepest,
            ", ".join(sorted(item.txid for item in tied)),
        )
        return self.tie_breaker(tied)

    def reconcile(
        self,
        validator: int,
        observed: Sequence[ObservedTx],
        scripts: Sequence[CScript],
    ) -> Optional[LectUpdate]:
        """Compare the validator's LECT with its node's view of the wallet.

        ``observed`` lists unspent wallet transactions paying one of
        ``scripts``. Returns the update this validator should propose, or
        ``None`` when its LECT already matches the network.
        """

        history = self.schema.lects(validator)
        history_ids = {tx.txid for tx in history}
        ours = history[-1] if history else None
        trusted = self._trusted_txids(validator)

        candidates: List[ObservedTx] = []
        for item in observed:
            tx = classify(item.tx)
            if tx.kind() is TxKind.OTHER:
                continue
            if not any(tx.has_output(script) for script in scripts):
                continue
            if not self._chains_to_trusted(tx, trusted):
                logger.debug("Ignoring %s: it does not chain to a known anchor", tx.txid)
                continue
            candidates.append(ObservedTx(tx=tx, confirmations=item.confirmations))
        if not candidates:
            return None

        anchors = [item for item in candidates if item.tx.kind() is TxKind.ANCHORING]
        pool = anchors or candidates
        best = self._select(pool)

        if ours is not None:
            if best.txid == ours.txid:
                return None
            if any(item.txid == ours.txid and item.confirmations == best.confirmations for item in pool):
                return None
            if best.txid in history_ids:
                if self._still_known(ours, observed):
                    logger.debug("Skipping superseded lect %s", best.txid)
                    return None
                logger.warning(
                    "Lect %s is no longer known to the Bitcoin node; falling back to %s",
                    ours.txid,
                    best.txid,
                )

        return LectUpdate(validator=validator, tx=best.tx, lect_count=len(history))
