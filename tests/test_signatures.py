from __future__ import annotations

from types import SimpleNamespace

from btc_anchoring.signatures import collect_signatures
from conftest import build_validators


def _proposal(inputs: int) -> SimpleNamespace:
    return SimpleNamespace(inputs=lambda: range(inputs))


def _sig(validator: int, input_index: int = 0, signature: bytes | None = None) -> SimpleNamespace:
    return SimpleNamespace(
        validator=validator,
        input=input_index,
        signature=signature or bytes([0x30, validator, input_index]),
    )


CONFIG = build_validators(4).config()


def test_incomplete_until_threshold_then_ordered_by_validator() -> None:
    proposal = _proposal(1)
    msgs = [_sig(2), _sig(0)]

    assert collect_signatures(proposal, CONFIG, msgs) is None

    msgs.append(_sig(1))
    collected = collect_signatures(proposal, CONFIG, msgs)

    assert collected == {0: [_sig(0).signature, _sig(1).signature, _sig(2).signature]}


def test_result_truncated_to_majority_count() -> None:
    proposal = _proposal(1)
    msgs = [_sig(3), _sig(1), _sig(2), _sig(0)]

    collected = collect_signatures(proposal, CONFIG, msgs)

    assert collected == {0: [_sig(0).signature, _sig(1).signature, _sig(2).signature]}


def test_last_contribution_for_a_slot_wins() -> None:
    proposal = _proposal(8)
    msgs = [_sig(validator, input_index) for input_index in range(8) for validator in (1, 2)]
    msgs.append(_sig(0, 7, b"sig_A"))
    msgs.append(_sig(0, 7, b"sig_B"))
    msgs.extend(_sig(0, input_index) for input_index in range(7))

    collected = collect_signatures(proposal, CONFIG, msgs)

    assert collected is not None
    assert collected[7][0] == b"sig_B"


def test_duplicate_contributions_are_idempotent() -> None:
    proposal = _proposal(1)
    msgs = [_sig(0), _sig(1), _sig(2)]

    once = collect_signatures(proposal, CONFIG, msgs)
    twice = collect_signatures(proposal, CONFIG, msgs + [_sig(1)])

    assert once == twice


def test_all_inputs_or_nothing() -> None:
    proposal = _proposal(2)
    msgs = [_sig(0, 0), _sig(1, 0), _sig(2, 0), _sig(0, 1), _sig(3, 1)]

    assert collect_signatures(proposal, CONFIG, msgs) is None

    msgs.append(_sig(2, 1))
    collected = collect_signatures(proposal, CONFIG, msgs)

    assert collected == {
        0: [_sig(0, 0).signature, _sig(1, 0).signature, _sig(2, 0).signature],
        1: [_sig(0, 1).signature, _sig(2, 1).signature, _sig(3, 1).signature],
    }


def test_no_contributions_is_incomplete() -> None:
    assert collect_signatures(_proposal(1), CONFIG, []) is None
