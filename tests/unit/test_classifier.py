"""
Unit tests for the event classifier (core/classifier.py)
"""

import base58
from solders.pubkey import Pubkey

from ore_learner.core.classifier import EventClassifier, EventKind, RawTransaction
from ore_learner.core.constants import ORE_PROGRAM_ID
from ore_learner.core.instructions import InstructionKind
from ore_learner.core.metrics import get_metrics


def test_deploy_classified(make_tx, deploy_bytes, wallets):
    tx = make_tx(wallets[0], [deploy_bytes(1_000, [1, 2])], slot=55)

    event = EventClassifier().classify(tx)

    assert event.kind is EventKind.DEPLOY
    assert event.instruction_kind is InstructionKind.DEPLOY
    assert event.signer == wallets[0]
    assert event.slot == 55
    assert event.payload.squares == (1, 2)
    assert event.is_gap is False


def test_transaction_without_ore_instruction(make_tx, wallets):
    other = str(Pubkey.new_unique())
    tx = make_tx(wallets[0], [b"\x06"], program_id=other)

    classifier = EventClassifier()

    assert classifier.classify(tx) is None
    assert classifier.classify_all(tx) == []


def test_truncated_payload_becomes_unknown_event(make_tx, wallets):
    tx = make_tx(wallets[0], [bytes([InstructionKind.DEPLOY, 1, 2])])

    event = EventClassifier().classify(tx)

    assert event.kind is EventKind.UNKNOWN
    assert event.decode_error is not None
    assert event.is_gap is True
    assert get_metrics().get_counter(
        "decode_errors", labels={"error": "TruncatedInstructionError"}
    ) == 1


def test_classify_all_keeps_instruction_order(make_tx, deploy_bytes, wallets):
    tx = make_tx(wallets[0], [
        bytes([InstructionKind.CHECKPOINT]),
        deploy_bytes(500, [4]),
        bytes([InstructionKind.CLAIM_SOL]),
    ])

    events = EventClassifier().classify_all(tx)

    assert [e.kind for e in events] == [EventKind.OTHER, EventKind.DEPLOY, EventKind.CLAIM]


def test_reset_without_result_is_gap(make_tx, wallets):
    tx = make_tx(wallets[0], [bytes([InstructionKind.RESET])])

    event = EventClassifier().classify(tx)

    assert event.kind is EventKind.ROUND_RESULT
    assert event.payload is None
    assert event.is_gap is True


def test_reset_with_log_result(make_tx, wallets):
    tx = make_tx(
        wallets[0],
        [bytes([InstructionKind.RESET])],
        meta={"logMessages": ["Program log: winning square: 8"]},
    )

    event = EventClassifier().classify(tx)

    assert event.payload.winning_square == 8
    assert event.payload.round_known is False


def test_from_rpc_resolves_lookup_table_addresses(wallets):
    writable = str(Pubkey.new_unique())
    result = {
        "slot": 321,
        "blockTime": 1_700_000_000,
        "meta": {
            "err": None,
            "logMessages": [],
            "loadedAddresses": {"writable": [writable], "readonly": [ORE_PROGRAM_ID]},
        },
        "transaction": {
            "signatures": ["5igX"],
            "message": {
                "accountKeys": [wallets[0]],
                "instructions": [{
                    "programIdIndex": 2,
                    "accounts": [0, 1],
                    "data": base58.b58encode(bytes([InstructionKind.CLAIM_ORE])).decode(),
                }],
            },
        },
    }

    tx = RawTransaction.from_rpc(result)

    assert tx.account_keys == [wallets[0], writable, ORE_PROGRAM_ID]
    assert tx.instructions[0].program_id == ORE_PROGRAM_ID
    assert tx.instructions[0].accounts == (wallets[0], writable)
    assert tx.success is True
    assert tx.block_time == 1_700_000_000

    event = EventClassifier().classify(tx)
    assert event.instruction_kind is InstructionKind.CLAIM_ORE


def test_failed_transaction_flag(wallets):
    result = {
        "slot": 1,
        "meta": {"err": {"InstructionError": [0, "Custom"]}},
        "transaction": {"signatures": ["x"], "message": {"accountKeys": [wallets[0]], "instructions": []}},
    }

    assert RawTransaction.from_rpc(result).success is False
