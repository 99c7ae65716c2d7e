"""Bitcoin transaction wrappers used by the anchoring protocol.

Anchoring transactions always have the same shape: output 0 carries the
wallet's funds forward to a multisig address and output 1 is an OP_RETURN
payload committing to a ledger height and block hash. Anything else paying a
P2SH output is treated as a funding transaction.
"""

from __future__ import annotations

import hashlib
import logging
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Sequence

from bitcoin.core import (
    CMutableTransaction,
    CTransaction,
    b2lx,
)
from bitcoin.core.script import (
    OP_0,
    OP_RETURN,
    SIGHASH_ALL,
    CScript,
    CScriptInvalidError,
    SignatureHash,
)
from ecdsa import SECP256k1, BadSignatureError, MalformedPointError, SigningKey, VerifyingKey
from ecdsa.der import UnexpectedDER
from ecdsa.util import sigdecode_der, sigencode_der_canonize

from .wallet import address_from_script_pubkey

logger = logging.getLogger(__name__)

PAYLOAD_MAGIC = b"ANCHOR"
PAYLOAD_VERSION = 1
PAYLOAD_KIND_REGULAR = 0
PAYLOAD_KIND_RECOVER = 1
_PAYLOAD_HEADER = struct.Struct("<6sBBQ32s")

DUST_LIMIT = 546


class TxKind(Enum):
    ANCHORING = "anchoring"
    FUNDING = "funding"
    OTHER = "other"


@dataclass(frozen=True)
class Payload:
    """Ledger commitment carried in the OP_RETURN output."""

    height: int
    block_hash: str
    prev_tx_chain: str | None = None

    def encode(self) -> bytes:
        kind = PAYLOAD_KIND_RECOVER if self.prev_tx_chain else PAYLOAD_KIND_REGULAR
        data = _PAYLOAD_HEADER.pack(
            PAYLOAD_MAGIC,
            PAYLOAD_VERSION,
            kind,
            self.height,
            _hash_bytes(self.block_hash, "block_hash"),
        )
        if self.prev_tx_chain:
            data += _hash_bytes(self.prev_tx_chain, "prev_tx_chain")
        return data

    @classmethod
    def decode(cls, data: bytes) -> "Payload":
        if len(data) < _PAYLOAD_HEADER.size:
            raise ValueError("Payload is too short")
        magic, version, kind, height, block_hash = _PAYLOAD_HEADER.unpack_from(data)
        if magic != PAYLOAD_MAGIC:
            raise ValueError("Payload magic mismatch")
        if version != PAYLOAD_VERSION:
            raise ValueError(f"Unsupported payload version {version}")
        rest = data[_PAYLOAD_HEADER.size:]
        if kind == PAYLOAD_KIND_REGULAR and not rest:
            return cls(height=height, block_hash=block_hash.hex())
        if kind == PAYLOAD_KIND_RECOVER and len(rest) == 32:
            return cls(height=height, block_hash=block_hash.hex(), prev_tx_chain=rest.hex())
        raise ValueError(f"Malformed payload of kind {kind}")

    def to_script(self) -> CScript:
        return CScript([OP_RETURN, self.encode()])


def _hash_bytes(value: str, label: str) -> bytes:
    try:
        raw = bytes.fromhex(value)
    except ValueError as exc:
        raise ValueError(f"{label} must be hex") from exc
    if len(raw) != 32:
        raise ValueError(f"{label} must be 32 bytes")
    return raw


class BitcoinTx:
    """Immutable view over a serialized Bitcoin transaction."""

    def __init__(self, tx: CTransaction) -> None:
        self.tx = tx

    @classmethod
    def from_hex(cls, raw_hex: str) -> "BitcoinTx":
        try:
            tx = CTransaction.deserialize(bytes.fromhex(raw_hex))
        except Exception as exc:
            raise ValueError(f"Cannot deserialize transaction: {exc}") from exc
        return cls(tx)

    def to_hex(self) -> str:
        return self.tx.serialize().hex()

    @property
    def txid(self) -> str:
        return b2lx(self.tx.GetTxid())

    @property
    def nid(self) -> str:
        """Txid with every scriptSig cleared; stable across finalization."""

        unsigned = CMutableTransaction.from_tx(self.tx)
        for txin in unsigned.vin:
            txin.scriptSig = CScript()
        return b2lx(unsigned.GetTxid())

    def prev_hash(self, input_index: int = 0) -> str:
        return b2lx(self.tx.vin[input_index].prevout.hash)

    def prev_out(self, input_index: int = 0) -> tuple[str, int]:
        prevout = self.tx.vin[input_index].prevout
        return b2lx(prevout.hash), prevout.n

    def inputs(self) -> range:
        return range(len(self.tx.vin))

    def output_value(self, index: int) -> int:
        return self.tx.vout[index].nValue

    def output_address(self, index: int, network: str) -> str | None:
        return address_from_script_pubkey(self.tx.vout[index].scriptPubKey, network)

    def find_out(self, script_pubkey: CScript) -> int | None:
        """Return the first output index paying ``script_pubkey``."""

        for index, txout in enumerate(self.tx.vout):
            if txout.scriptPubKey == script_pubkey:
                return index
        return None

    def has_output(self, script_pubkey: CScript) -> bool:
        return self.find_out(script_pubkey) is not None

    def payload(self) -> Payload | None:
        if len(self.tx.vout) < 2:
            return None
        script = self.tx.vout[1].scriptPubKey
        try:
            ops = list(script)
        except CScriptInvalidError:
            return None
        if len(ops) != 2 or ops[0] != OP_RETURN or not isinstance(ops[1], bytes):
            return None
        try:
            return Payload.decode(ops[1])
        except ValueError:
            return None

    def kind(self) -> TxKind:
        if self.payload() is not None:
            return TxKind.ANCHORING
        if any(txout.scriptPubKey.is_p2sh() for txout in self.tx.vout):
            return TxKind.FUNDING
        return TxKind.OTHER

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BitcoinTx):
            return NotImplemented
        return self.tx.serialize() == other.tx.serialize()

    def __hash__(self) -> int:
        return hash(self.tx.serialize())

    def __repr__(self) -> str:
        return f"{type(self).__name__}(txid={self.txid})"


class FundingTx(BitcoinTx):
    """Externally supplied transaction seeding a multisig wallet."""

    def amount_to(self, script_pubkey: CScript) -> int:
        index = self.find_out(script_pubkey)
        return 0 if index is None else self.output_value(index)


class AnchoringTx(BitcoinTx):
    """Anchoring transaction, signed or still a proposal."""

    @property
    def anchor(self) -> Payload:
        payload = self.payload()
        if payload is None:
            raise ValueError(f"Transaction {self.txid} carries no anchoring payload")
        return payload

    @property
    def amount(self) -> int:
        return self.output_value(0)

    def signature_hash(self, redeem_script: CScript, input_index: int) -> bytes:
        return SignatureHash(redeem_script, self.tx, input_index, SIGHASH_ALL)

    def sign_input(self, redeem_script: CScript, input_index: int, private_key: str) -> bytes:
        """Return a low-S DER signature with the SIGHASH_ALL byte appended."""

        digest = self.signature_hash(redeem_script, input_index)
        key = SigningKey.from_string(bytes.fromhex(private_key), curve=SECP256k1)
        der = key.sign_digest_deterministic(
            digest, hashfunc=hashlib.sha256, sigencode=sigencode_der_canonize
        )
        return der + bytes([SIGHASH_ALL])

    def verify_input(
        self, redeem_script: CScript, input_index: int, pubkey: str, signature: bytes
    ) -> bool:
        if not signature or signature[-1] != SIGHASH_ALL:
            return False
        try:
            digest = self.signature_hash(redeem_script, input_index)
            key = VerifyingKey.from_string(bytes.fromhex(pubkey), curve=SECP256k1)
            return key.verify_digest(signature[:-1], digest, sigdecode=sigdecode_der)
        except (BadSignatureError, MalformedPointError, UnexpectedDER, ValueError):
            return False

    def finalize(
        self, redeem_script: CScript, signatures: Mapping[int, Sequence[bytes]]
    ) -> "AnchoringTx":
        """Attach ``OP_0 <sig...> <redeem_script>`` scriptSigs to every input."""

        signed = CMutableTransaction.from_tx(self.tx)
        for input_index in self.inputs():
            sigs = list(signatures[input_index])
            signed.vin[input_index].scriptSig = CScript([OP_0] + sigs + [redeem_script])
        return AnchoringTx(CTransaction.from_tx(signed))


def classify(tx: BitcoinTx | str) -> BitcoinTx:
    """Wrap ``tx`` in the most specific class matching its shape."""

    if isinstance(tx, str):
        tx = BitcoinTx.from_hex(tx)
    kind = tx.kind()
    if kind is TxKind.ANCHORING:
        return AnchoringTx(tx.tx)
    if kind is TxKind.FUNDING:
        return FundingTx(tx.tx)
    return BitcoinTx(tx.tx)
