"""Protocol transactions carried through the host ledger's consensus.

Two message kinds exist: a validator's signature for one input of a proposal,
and a validator's announcement of its latest expected correct transaction
(LECT). Messages are authenticated with the sender's Ed25519 service key and
encoded as canonical JSON.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, ClassVar, Dict, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from .errors import MessageError
from .transactions import AnchoringTx, BitcoinTx, TxKind, classify

if TYPE_CHECKING:
    from .schema import AnchoringSchema

logger = logging.getLogger(__name__)

ANCHORING_SERVICE = 3
MSG_ANCHORING_SIGNATURE = 0
MSG_ANCHORING_UPDATE_LATEST = 1

COMPACT_JSON_SEPARATORS = (",", ":")


def service_public_key(secret_key: str) -> str:
    """Return the hex Ed25519 public key for a hex 32-byte seed."""

    private = Ed25519PrivateKey.from_private_bytes(bytes.fromhex(secret_key))
    return private.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw).hex()


class AnchoringMessage:
    """Behavior shared by both protocol transactions."""

    MESSAGE_TYPE: ClassVar[int]

    from_key: str
    validator: int
    auth: str | None

    def body(self) -> Dict[str, Any]:
        raise NotImplementedError

    def execute(self, schema: "AnchoringSchema", height: int) -> None:
        raise NotImplementedError

    def signed_bytes(self) -> bytes:
        envelope = {
            "service_id": ANCHORING_SERVICE,
            "message_type": self.MESSAGE_TYPE,
            "from": self.from_key,
            "body": self.body(),
        }
        return json.dumps(envelope, separators=COMPACT_JSON_SEPARATORS, sort_keys=True).encode("utf-8")

    def sign(self, secret_key: str):
        """Return a copy authenticated with the hex Ed25519 seed ``secret_key``."""

        private = Ed25519PrivateKey.from_private_bytes(bytes.fromhex(secret_key))
        return replace(self, auth=private.sign(self.signed_bytes()).hex())

    def verify_signature(self) -> bool:
        if not self.auth:
            return False
        try:
            public = Ed25519PublicKey.from_public_bytes(bytes.fromhex(self.from_key))
            public.verify(bytes.fromhex(self.auth), self.signed_bytes())
        except (InvalidSignature, ValueError):
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service_id": ANCHORING_SERVICE,
            "message_type": self.MESSAGE_TYPE,
            "from": self.from_key,
            "body": self.body(),
            "signature": self.auth,
        }

    def to_raw(self) -> bytes:
        return json.dumps(self.to_dict(), separators=COMPACT_JSON_SEPARATORS, sort_keys=True).encode("utf-8")


@dataclass(frozen=True)
class MsgAnchoringSignature(AnchoringMessage):
    """One validator's signature for one input of a proposal."""

    MESSAGE_TYPE: ClassVar[int] = MSG_ANCHORING_SIGNATURE

    from_key: str
    validator: int
    tx: AnchoringTx
    input: int
    signature: bytes
    auth: str | None = None

    def body(self) -> Dict[str, Any]:
        return {
            "validator": self.validator,
            "tx": self.tx.to_hex(),
            "input": self.input,
            "signature": self.signature.hex(),
        }

    def execute(self, schema: "AnchoringSchema", height: int) -> None:
        cfg = schema.actual_config(height)
        if not 0 <= self.validator < len(cfg.validators):
            logger.warning("Received signature from unknown validator %d", self.validator)
            return
        if not 0 <= self.input < len(self.tx.tx.vin):
            logger.warning(
                "Received signature for missing input %d of %s", self.input, self.tx.nid
            )
            return
        multisig = cfg.multisig()
        pubkey = cfg.validators[self.validator]
        if not self.tx.verify_input(multisig.redeem_script, self.input, pubkey, self.signature):
            logger.warning(
                "Received invalid signature from validator %d for input %d of %s",
                self.validator,
                self.input,
                self.tx.nid,
            )
            return
        schema.add_signature(self)


@dataclass(frozen=True)
class MsgAnchoringUpdateLatest(AnchoringMessage):
    """A validator's announcement of its new LECT."""

    MESSAGE_TYPE: ClassVar[int] = MSG_ANCHORING_UPDATE_LATEST

    from_key: str
    validator: int
    tx: BitcoinTx
    lect_count: int
    auth: str | None = None

    def body(self) -> Dict[str, Any]:
        return {
            "validator": self.validator,
            "tx": self.tx.to_hex(),
            "lect_count": self.lect_count,
        }

    def execute(self, schema: "AnchoringSchema", height: int) -> None:
        cfg = schema.actual_config(height)
        if not 0 <= self.validator < len(cfg.validators):
            logger.warning("Received lect from unknown validator %d", self.validator)
            return
        scripts = schema.wallet_scripts(height)
        if not any(self.tx.has_output(script) for script in scripts):
            logger.warning(
                "Received lect %s from validator %d paying no known wallet",
                self.tx.txid,
                self.validator,
            )
            return
        count = len(schema.lects(self.validator))
        if count != self.lect_count:
            logger.warning(
                "Received lect %s from validator %d with count %d, expected %d",
                self.tx.txid,
                self.validator,
                self.lect_count,
                count,
            )
            return
        schema.add_lect(self.validator, self.tx)


AnchoringTransaction = Union[MsgAnchoringSignature, MsgAnchoringUpdateLatest]


def _require(mapping: Dict[str, Any], key: str, kind: type) -> Any:
    value = mapping.get(key)
    if not isinstance(value, kind) or isinstance(value, bool) and kind is int:
        raise MessageError(f"Field {key!r} must be {kind.__name__}")
    return value


def message_from_dict(payload: Dict[str, Any]) -> AnchoringTransaction:
    """Decode a message produced by :meth:`AnchoringMessage.to_dict`."""

    if not isinstance(payload, dict):
        raise MessageError("Anchoring message must be a JSON object")
    if payload.get("service_id") != ANCHORING_SERVICE:
        raise MessageError(f"Message is not addressed to service {ANCHORING_SERVICE}")
    body = payload.get("body")
    if not isinstance(body, dict):
        raise MessageError("Anchoring message has no body")
    from_key = _require(payload, "from", str)
    auth = payload.get("signature")
    if auth is not None and not isinstance(auth, str):
        raise MessageError("Field 'signature' must be str")

    try:
        tx = classify(_require(body, "tx", str))
    except ValueError as exc:
        raise MessageError(str(exc)) from exc

    message_type = payload.get("message_type")
    if message_type == MSG_ANCHORING_SIGNATURE:
        if tx.kind() is not TxKind.ANCHORING:
            raise MessageError("Signature message does not carry an anchoring transaction")
        try:
            signature = bytes.fromhex(_require(body, "signature", str))
        except ValueError as exc:
            raise MessageError("Field 'signature' must be hex") from exc
        return MsgAnchoringSignature(
            from_key=from_key,
            validator=_require(body, "validator", int),
            tx=AnchoringTx(tx.tx),
            input=_require(body, "input", int),
            signature=signature,
            auth=auth,
        )
    if message_type == MSG_ANCHORING_UPDATE_LATEST:
        return MsgAnchoringUpdateLatest(
            from_key=from_key,
            validator=_require(body, "validator", int),
            tx=tx,
            lect_count=_require(body, "lect_count", int),
            auth=auth,
        )
    raise MessageError(f"Unknown anchoring message type {message_type!r}")


def message_from_raw(raw: bytes | str) -> AnchoringTransaction:
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise MessageError("Anchoring message is not valid JSON") from exc
    return message_from_dict(payload)
