"""Shared multisig wallet derivation for a validator set."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Sequence

import bitcoin
from bitcoin.core.script import OP_CHECKMULTISIG, CScript, CScriptOp
from bitcoin.wallet import CBitcoinAddress, CBitcoinAddressError, P2SHBitcoinAddress

MAX_MULTISIG_KEYS = 15
_COMPRESSED_KEY_PREFIXES = (0x02, 0x03)


@dataclass(frozen=True)
class MultisigAddress:
    """Redeem script and P2SH address shared by one validator set."""

    redeem_script: CScript
    address: str
    majority_count: int
    pubkeys: tuple[str, ...]
    network: str

    @property
    def script_pubkey(self) -> CScript:
        return self.redeem_script.to_p2sh_scriptPubKey()


def select_network(network: str) -> None:
    """Point python-bitcoinlib's global chain params at ``network``."""

    if bitcoin.params.NAME != network:
        bitcoin.SelectParams(network)


def address_from_script_pubkey(script_pubkey: CScript, network: str) -> str | None:
    """Render a standard output script as an address, ``None`` for data outputs."""

    select_network(network)
    try:
        return str(CBitcoinAddress.from_scriptPubKey(script_pubkey))
    except CBitcoinAddressError:
        return None


def _parse_pubkey(raw: str) -> bytes:
    try:
        key = bytes.fromhex(raw)
    except ValueError as exc:
        raise ValueError(f"Validator key is not valid hex: {raw!r}") from exc
    if len(key) != 33 or key[0] not in _COMPRESSED_KEY_PREFIXES:
        raise ValueError("Validator keys must be 33-byte compressed secp256k1 public keys")
    return key


def redeem_script_from_pubkeys(pubkeys: Sequence[str], majority_count: int) -> CScript:
    """Return ``OP_m <pk...> OP_n OP_CHECKMULTISIG`` with keys in validator order."""

    if not pubkeys:
        raise ValueError("Multisig wallets require at least one validator key")
    if len(pubkeys) > MAX_MULTISIG_KEYS:
        raise ValueError(f"P2SH multisig supports at most {MAX_MULTISIG_KEYS} keys")
    if not 1 <= majority_count <= len(pubkeys):
        raise ValueError("majority_count must be between 1 and the number of validators")

    keys = [_parse_pubkey(raw) for raw in pubkeys]
    return CScript(
        [CScriptOp.encode_op_n(majority_count)]
        + keys
        + [CScriptOp.encode_op_n(len(keys)), OP_CHECKMULTISIG]
    )


@lru_cache(maxsize=64)
def _derive(pubkeys: tuple[str, ...], majority_count: int, network: str) -> MultisigAddress:
    redeem_script = redeem_script_from_pubkeys(pubkeys, majority_count)
    select_network(network)
    address = P2SHBitcoinAddress.from_redeemScript(redeem_script)
    return MultisigAddress(
        redeem_script=redeem_script,
        address=str(address),
        majority_count=majority_count,
        pubkeys=pubkeys,
        network=network,
    )


def derive_multisig(
    pubkeys: Sequence[str], majority_count: int, network: str = "testnet"
) -> MultisigAddress:
    """Derive the shared redeem script and P2SH address for ``pubkeys``.

    The result depends only on the ordered key list, the threshold and the
    network, so every validator computes byte-identical wallets.
    """

    return _derive(tuple(key.lower() for key in pubkeys), int(majority_count), network)
