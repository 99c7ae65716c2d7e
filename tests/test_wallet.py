from __future__ import annotations

import pytest
from bitcoin.core.script import OP_CHECKMULTISIG

from btc_anchoring.config import majority_count
from btc_anchoring.wallet import address_from_script_pubkey, derive_multisig, redeem_script_from_pubkeys
from conftest import build_validators


def test_majority_count_matches_two_thirds_plus_one() -> None:
    assert [majority_count(n) for n in (1, 2, 3, 4, 5, 6, 7, 10)] == [1, 2, 3, 3, 4, 5, 5, 7]


def test_redeem_script_orders_keys_by_validator_index() -> None:
    keys = build_validators(4).public_keys
    script = redeem_script_from_pubkeys(keys, 3)

    ops = list(script)
    assert ops[0] == 3
    assert [item.hex() for item in ops[1:5]] == keys
    assert ops[5] == 4
    assert ops[6] == OP_CHECKMULTISIG


def test_derive_multisig_is_deterministic_and_order_sensitive() -> None:
    keys = build_validators(4).public_keys

    first = derive_multisig(keys, 3, "testnet")
    second = derive_multisig(list(keys), 3, "testnet")
    reordered = derive_multisig(list(reversed(keys)), 3, "testnet")

    assert first.address == second.address
    assert first.redeem_script == second.redeem_script
    assert reordered.address != first.address
    assert first.address[0] == "2"


def test_derive_multisig_uses_network_prefix() -> None:
    keys = build_validators(3).public_keys

    mainnet = derive_multisig(keys, 3, "mainnet")
    testnet = derive_multisig(keys, 3, "testnet")

    assert mainnet.address.startswith("3")
    assert testnet.address.startswith("2")
    assert mainnet.redeem_script == testnet.redeem_script


def test_address_from_script_pubkey_round_trips_p2sh() -> None:
    multisig = derive_multisig(build_validators(4).public_keys, 3, "testnet")

    assert address_from_script_pubkey(multisig.script_pubkey, "testnet") == multisig.address


def test_derive_multisig_rejects_invalid_inputs() -> None:
    keys = build_validators(4).public_keys

    with pytest.raises(ValueError):
        derive_multisig([], 1)
    with pytest.raises(ValueError):
        derive_multisig(keys, 5)
    with pytest.raises(ValueError):
        derive_multisig(keys, 0)
    with pytest.raises(ValueError):
        derive_multisig(build_validators(16).public_keys, 11)
    with pytest.raises(ValueError):
        derive_multisig(["04" + "11" * 64], 1)
    with pytest.raises(ValueError):
        derive_multisig(["zz"], 1)
