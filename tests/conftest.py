from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Callable, List

import pytest
from bitcoin.core import CMutableTransaction, CMutableTxIn, CMutableTxOut, COutPoint, CTransaction
from bitcoin.core.script import CScript
from ecdsa import SECP256k1, SigningKey

from btc_anchoring.config import AnchoringConfig, AnchoringNodeConfig, RPCConfig, majority_count
from btc_anchoring.transactions import FundingTx
from btc_anchoring.wallet import derive_multisig


def private_key(index: int) -> str:
    return "%064x" % (index + 1)


def public_key(secret: str) -> str:
    key = SigningKey.from_string(bytes.fromhex(secret), curve=SECP256k1)
    return key.get_verifying_key().to_string("compressed").hex()


def service_key(index: int) -> str:
    return hashlib.sha256(f"service-{index}".encode()).hexdigest()


def block_hash(height: int) -> str:
    return hashlib.sha256(f"block-{height}".encode()).hexdigest()


def make_funding(script_pubkey: CScript, value: int = 100_000, seed: int = 0) -> FundingTx:
    tx = CMutableTransaction(
        [CMutableTxIn(COutPoint(hashlib.sha256(b"coinbase-%d" % seed).digest(), 0))],
        [CMutableTxOut(value, script_pubkey)],
    )
    return FundingTx(CTransaction.from_tx(tx))


@dataclass
class Validators:
    private_keys: List[str]
    public_keys: List[str]
    service_keys: List[str]

    def config(self, funding_value: int = 100_000, seed: int = 0, **overrides) -> AnchoringConfig:
        multisig = derive_multisig(self.public_keys, majority_count(len(self.public_keys)), "testnet")
        funding = make_funding(multisig.script_pubkey, funding_value, seed)
        params = dict(fee=1000, frequency=10, utxo_confirmations=2, network="testnet")
        params.update(overrides)
        return AnchoringConfig(validators=tuple(self.public_keys), funding_tx=funding.to_hex(), **params)

    def node_config(self, index: int, *configs: AnchoringConfig, check_lect_frequency: int = 5) -> AnchoringNodeConfig:
        keys = {}
        for cfg in configs:
            if self.public_keys[index] in cfg.validators:
                keys[cfg.multisig().address] = self.private_keys[index]
        return AnchoringNodeConfig(
            rpc=RPCConfig(user="user", password="pass"),
            private_keys=keys,
            service_key=self.service_keys[index],
            check_lect_frequency=check_lect_frequency,
        )


def build_validators(count: int, offset: int = 0) -> Validators:
    secrets = [private_key(index + offset) for index in range(count)]
    return Validators(
        private_keys=secrets,
        public_keys=[public_key(secret) for secret in secrets],
        service_keys=[service_key(index + offset) for index in range(count)],
    )


@pytest.fixture
def validators() -> Validators:
    return build_validators(4)


@pytest.fixture
def funding_factory() -> Callable[..., FundingTx]:
    return make_funding
