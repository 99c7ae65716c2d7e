"""JSON-RPC client for the Bitcoin node watched by the anchoring service.

The client is the engine's only window onto the Bitcoin network: it imports
the multisig wallet address at genesis, broadcasts finalized anchors and lists
the wallet's unspent transactions during LECT reconciliation. Every call is
bounded by ``RPCConfig.timeout`` so a slow node degrades anchoring progress
without stalling the ledger's block commit.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import requests
from requests import RequestException, Response

from .config import RPCConfig, load_rpc_config
from .transactions import BitcoinTx

logger = logging.getLogger(__name__)

RPC_INVALID_ADDRESS_OR_KEY = -5
RPC_TRANSACTION_ALREADY_IN_CHAIN = -27


class RPCError(RuntimeError):
    """Raised when the Bitcoin node responds with an RPC error."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.message = message


class RPCTransportError(RuntimeError):
    """Raised when the RPC endpoint is unreachable or returns malformed data."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def format_rpc_hint(error_obj: dict[str, Any] | RPCError | None) -> str | None:
    """Return a human-friendly hint for common Bitcoin Core JSON-RPC errors."""

    if error_obj is None:
        return None

    code = None
    message = ""
    if isinstance(error_obj, RPCError):
        code = error_obj.code
        message = error_obj.message
    elif isinstance(error_obj, dict):
        code = error_obj.get("code")
        message = str(error_obj.get("message", ""))

    lowered = message.lower()
    if code == -26 and "min relay fee not met" in lowered:
        return "The anchor fee is below the node's minrelaytxfee; raise the anchoring fee in the next config epoch."
    if code == -25 or "missing inputs" in lowered or "bad-txns-inputs-missingorspent" in lowered:
        return (
            "The anchor spends an output the node does not know or considers spent; "
            "the LECT is probably stale and will be reconciled on a later block."
        )
    if code == RPC_TRANSACTION_ALREADY_IN_CHAIN or "already in block chain" in lowered:
        return "The transaction is already confirmed; nothing to rebroadcast."
    if code == RPC_INVALID_ADDRESS_OR_KEY and "no such mempool or blockchain transaction" in lowered:
        return "Enable -txindex on the node or import the multisig address so wallet transactions can be fetched."
    if code == -18 or "requested wallet does not exist" in lowered:
        return "Load a wallet (loadwallet) that watches the multisig address, or set rpc.wallet."
    return None


@dataclass
class ObservedTx:
    """A wallet transaction together with its depth on the Bitcoin chain."""

    tx: BitcoinTx
    confirmations: int = 0

    @property
    def txid(self) -> str:
        return self.tx.txid


class AnchoringRpc:
    """Typed JSON-RPC client for Bitcoin Core compatible nodes.

    Each wrapper maps to one RPC method. The higher level helpers
    (``unspent_transactions`` and friends) fold the raw responses into
    :class:`BitcoinTx` objects so the engine never handles JSON directly.
    """

    def __init__(self, config: RPCConfig) -> None:
        self.config = config
        self._session = requests.Session()
        self._base_url = config.base_url
        self._wallet = config.wallet

    @classmethod
    def from_env(cls) -> "AnchoringRpc":
        """Instantiate a client using environment variables or config file."""

        return cls(load_rpc_config())

    def call(self, method: str, params: Optional[list[Any]] = None) -> Any:
        """Perform a JSON-RPC request."""

        payload = {
            "jsonrpc": "1.0",
            "id": str(uuid.uuid4()),
            "method": method,
            "params": params or [],
        }
        logger.debug("RPC call %s params=%s", method, params)
        try:
            response = self._session.post(
                self._url,
                data=json.dumps(payload),
                headers={"content-type": "application/json"},
                auth=(self.config.user, self.config.password),
                timeout=self.config.timeout,
            )
        except RequestException as exc:
            logger.error(
                "RPC connection failed: %s",
                exc,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            raise RPCTransportError(
                "RPC connection failed. Ensure your Bitcoin node is reachable, authentication is valid, "
                "and BTC_ANCHORING_RPC_* variables (or ~/.btc-anchoring.yaml) point to the right host and port."
            ) from exc
        result = self._decode_response(response)
        if result.get("error"):
            error = result["error"]
            raise RPCError(error.get("code", -1), error.get("message", "unknown"))
        return result.get("result")

    def _decode_response(self, response: Response) -> Dict[str, Any]:
        # Bitcoin Core reports JSON-RPC errors with HTTP 500 and a JSON body;
        # only treat the status as fatal when no such body is present.
        try:
            body = response.json()
        except ValueError as exc:
            if not response.ok:
                logger.error("RPC HTTP error %s from %s", response.status_code, response.url)
                if response.status_code == 401:
                    raise RPCTransportError(
                        "Unauthorized (401). Check BTC_ANCHORING_RPC_USER/PASSWORD or the rpc section of your config.",
                        status_code=response.status_code,
                    ) from exc
                raise RPCTransportError(
                    "RPC server returned an HTTP error; check the URL, wallet path and authentication.",
                    status_code=response.status_code,
                ) from exc
            logger.debug("RPC JSON parse error: %s", response.text, exc_info=True)
            raise RPCTransportError("RPC server returned malformed JSON") from exc
        if not isinstance(body, dict):
            raise RPCTransportError("RPC server returned an unexpected payload")
        if not response.ok and not body.get("error"):
            raise RPCTransportError(
                f"RPC server returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return body

    @property
    def _url(self) -> str:
        if self._wallet:
            return f"{self._base_url}/wallet/{self._wallet}"
        return self._base_url

    # Convenience wrappers -------------------------------------------------

    def importaddress(
        self, address: str, label: str = "", rescan: bool = False, p2sh: bool = False
    ) -> None:
        self.call("importaddress", [address, label, rescan, p2sh])

    def getrawtransaction(self, txid: str, verbose: bool = False) -> Any:
        return self.call("getrawtransaction", [txid, int(verbose)])

    def sendrawtransaction(self, raw_tx: str) -> str:
        return self.call("sendrawtransaction", [raw_tx])

    def listunspent(
        self,
        minconf: int = 0,
        maxconf: int = 9999999,
        addresses: Optional[list[str]] = None,
    ) -> list[Dict[str, Any]]:
        params: list[Any] = [minconf, maxconf]
        if addresses is not None:
            params.append(addresses)
        return self.call("listunspent", params)

    # Anchoring helpers ----------------------------------------------------

    def send_transaction(self, tx: BitcoinTx) -> str:
        """Broadcast ``tx`` and return the txid reported by the node."""

        txid = self.sendrawtransaction(tx.to_hex())
        logger.info("Broadcasted transaction %s", txid)
        return txid

    def get_transaction(self, txid: str) -> BitcoinTx | None:
        """Fetch ``txid`` or return ``None`` when the node does not know it."""

        observed = self._get_verbose(txid)
        return observed.tx if observed else None

    def get_transaction_confirmations(self, txid: str) -> int | None:
        """Return the depth of ``txid``; ``None`` when unknown, ``0`` in the mempool."""

        observed = self._get_verbose(txid)
        return observed.confirmations if observed else None

    def unspent_transactions(self, addresses: Iterable[str]) -> List[ObservedTx]:
        """Return wallet transactions with unspent outputs paying ``addresses``."""

        address_list = list(addresses)
        if not address_list:
            return []
        entries = self.listunspent(0, 9999999, address_list)
        observed: List[ObservedTx] = []
        seen: set[str] = set()
        for entry in entries:
            txid = entry.get("txid")
            if not txid or txid in seen:
                continue
            seen.add(txid)
            tx = self._get_verbose(str(txid))
            if tx is None:
                logger.warning("Wallet lists %s as unspent but the node cannot return it", txid)
                continue
            observed.append(tx)
        return observed

    def _get_verbose(self, txid: str) -> ObservedTx | None:
        try:
            decoded = self.getrawtransaction(txid, verbose=True)
        except RPCError as exc:
            if exc.code == RPC_INVALID_ADDRESS_OR_KEY:
                return None
            raise
        if not isinstance(decoded, dict) or "hex" not in decoded:
            raise RPCTransportError(f"getrawtransaction returned no hex for {txid}")
        try:
            tx = BitcoinTx.from_hex(decoded["hex"])
            confirmations = int(decoded.get("confirmations", 0) or 0)
        except (TypeError, ValueError) as exc:
            raise RPCTransportError(f"getrawtransaction returned malformed data for {txid}: {exc}") from exc
        return ObservedTx(tx=tx, confirmations=confirmations)
