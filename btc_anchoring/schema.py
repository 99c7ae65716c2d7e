"""Typed view over the anchoring service's persistent state."""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from bitcoin.core.script import CScript

from .config import AnchoringConfig
from .messages import MsgAnchoringSignature, message_from_dict
from .storage import Storage, StorageError
from .transactions import BitcoinTx, classify

logger = logging.getLogger(__name__)

CONFIGS_KEY = "anchoring/configs"
SIGNATURES_PREFIX = "anchoring/signatures/"
LECTS_PREFIX = "anchoring/lects/"
KNOWN_TXS_PREFIX = "anchoring/known_txs/"


class AnchoringSchema:
    """Read and write anchoring state through a :class:`Storage` backend.

    Configurations are kept as an ordered list of ``(actual_from, config)``
    epochs. A config scheduled for a future height is the *following* config
    until the ledger reaches that height.
    """

    def __init__(self, storage: Storage) -> None:
        self.storage = storage

    # Configurations -------------------------------------------------------

    def create_genesis_config(self, cfg: AnchoringConfig) -> None:
        if self.storage.get(CONFIGS_KEY):
            raise StorageError("Genesis anchoring config is already stored")
        self.storage.put(CONFIGS_KEY, [{"actual_from": 0, "config": cfg.to_dict()}])
        if cfg.funding_tx:
            funding = classify(cfg.funding_tx)
            for validator in range(len(cfg.validators)):
                self.add_lect(validator, funding)

    def schedule_config(self, cfg: AnchoringConfig, actual_from: int) -> None:
        entries = self._config_entries()
        if not entries:
            raise StorageError("Cannot schedule a config before the genesis config exists")
        if actual_from <= entries[-1][0]:
            raise ValueError(
                f"New config must become actual after height {entries[-1][0]}, got {actual_from}"
            )
        raw = self.storage.get(CONFIGS_KEY)
        raw.append({"actual_from": actual_from, "config": cfg.to_dict()})
        self.storage.put(CONFIGS_KEY, raw)
        logger.info("Scheduled anchoring config for height %d", actual_from)

    def _config_entries(self) -> List[Tuple[int, AnchoringConfig]]:
        raw = self.storage.get(CONFIGS_KEY) or []
        return [(int(item["actual_from"]), AnchoringConfig.from_dict(item["config"])) for item in raw]

    def _actual_index(self, height: int) -> int:
        entries = self._config_entries()
        if not entries:
            raise StorageError("Anchoring genesis config is missing")
        index = 0
        for position, (actual_from, _) in enumerate(entries):
            if actual_from <= height:
                index = position
        return index

    def actual_config(self, height: int) -> AnchoringConfig:
        return self._config_entries()[self._actual_index(height)][1]

    def following_config(self, height: int) -> Optional[Tuple[int, AnchoringConfig]]:
        entries = self._config_entries()
        index = self._actual_index(height)
        if index + 1 < len(entries):
            return entries[index + 1]
        return None

    def previous_config(self, height: int) -> Optional[AnchoringConfig]:
        index = self._actual_index(height)
        if index == 0:
            return None
        return self._config_entries()[index - 1][1]

    def wallet_scripts(self, height: int) -> List[CScript]:
        """P2SH scripts of the previous, actual and following wallets."""

        configs = [self.previous_config(height), self.actual_config(height)]
        following = self.following_config(height)
        if following is not None:
            configs.append(following[1])
        return [cfg.multisig().script_pubkey for cfg in configs if cfg is not None]

    def funding_txids(self) -> set[str]:
        txids: set[str] = set()
        for _, cfg in self._config_entries():
            if cfg.funding_tx:
                txids.add(classify(cfg.funding_tx).txid)
        return txids

    # Signatures -----------------------------------------------------------

    def signatures(self, nid: str) -> List[MsgAnchoringSignature]:
        raw = self.storage.get(SIGNATURES_PREFIX + nid) or []
        return [message_from_dict(item) for item in raw]

    def add_signature(self, msg: MsgAnchoringSignature) -> None:
        key = SIGNATURES_PREFIX + msg.tx.nid
        raw = self.storage.get(key) or []
        raw.append(msg.to_dict())
        self.storage.put(key, raw)

    # LECTs ----------------------------------------------------------------

    def lects(self, validator: int) -> List[BitcoinTx]:
        raw = self.storage.get(f"{LECTS_PREFIX}{validator}") or []
        return [classify(item) for item in raw]

    def lect(self, validator: int) -> Optional[BitcoinTx]:
        lects = self.lects(validator)
        return lects[-1] if lects else None

    def add_lect(self, validator: int, tx: BitcoinTx) -> None:
        key = f"{LECTS_PREFIX}{validator}"
        raw = self.storage.get(key) or []
        raw.append(tx.to_hex())
        self.storage.put(key, raw)
        self.add_known_tx(tx)

    # Known transactions ---------------------------------------------------

    def known_tx(self, txid: str) -> Optional[BitcoinTx]:
        raw = self.storage.get(KNOWN_TXS_PREFIX + txid)
        return None if raw is None else classify(raw)

    def add_known_tx(self, tx: BitcoinTx) -> None:
        self.storage.put(KNOWN_TXS_PREFIX + tx.txid, tx.to_hex())
