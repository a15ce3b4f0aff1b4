"""
Tests for transfer extraction: pure parsing and batched block extraction.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from fakes import (
    DEST_ACCOUNT,
    HTTP_ERROR,
    SOURCE_ACCOUNT,
    USDC_MINT,
    USDT_MINT,
    RecordingSleep,
    checked_ix,
    make_tx,
    other_ix,
    transfer_ix,
)
from ledger_watchdog.ingestion.extractor import TransferExtractor, parse_transfers
from ledger_watchdog.ingestion.models import SlotBlock


def test_transfer_checked_amount_normalization():
    tx = make_tx("sigA", [checked_ix("100500000")])
    events = parse_transfers(tx, USDT_MINT, slot=9, block_time=900)
    assert len(events) == 1
    ev = events[0]
    assert ev.decimal_amount == Decimal("100.5")
    assert ev.raw_amount == "100500000"
    assert ev.decimals == 6
    assert ev.instruction_kind == "transferChecked"
    assert ev.source == SOURCE_ACCOUNT
    assert ev.destination == DEST_ACCOUNT
    assert ev.slot == 9
    assert ev.block_time == 900
    assert ev.record_key == "sigA"


def test_transfer_checked_uses_token_amount_decimals():
    tx = make_tx("sigA", [checked_ix("1234", decimals=2)])
    (ev,) = parse_transfers(tx, USDT_MINT)
    assert ev.decimal_amount == Decimal("12.34")
    assert ev.decimals == 2


def test_transfer_checked_other_mint_ignored():
    tx = make_tx("sigA", [checked_ix("1000000", mint=USDC_MINT)])
    assert parse_transfers(tx, USDT_MINT) == []


def test_untyped_transfer_requires_mint_in_balances():
    touched = make_tx("sigT", [transfer_ix("2500000")], balance_mints=[USDT_MINT])
    untouched = make_tx("sigU", [transfer_ix("2500000")], balance_mints=[USDC_MINT])
    (ev,) = parse_transfers(touched, USDT_MINT)
    assert ev.instruction_kind == "transfer"
    assert ev.decimal_amount == Decimal("2.5")
    assert parse_transfers(untouched, USDT_MINT) == []


def test_non_token_program_ignored():
    tx = make_tx("sigS", [other_ix()], balance_mints=[USDT_MINT])
    assert parse_transfers(tx, USDT_MINT) == []


def test_token_2022_program_accepted():
    tx = make_tx("sig22", [checked_ix("5000000", program="spl-token-2022")])
    (ev,) = parse_transfers(tx, USDT_MINT)
    assert ev.decimal_amount == Decimal("5")


def test_inner_instruction_index():
    tx = make_tx("sigI", [other_ix()], inner=[other_ix(), checked_ix("7000000")])
    (ev,) = parse_transfers(tx, USDT_MINT)
    assert ev.instruction_index == "0.1"
    assert ev.decimal_amount == Decimal("7")


def test_first_match_only_by_default():
    tx = make_tx("sigM", [checked_ix("1000000"), checked_ix("2000000")])
    events = parse_transfers(tx, USDT_MINT)
    assert len(events) == 1
    assert events[0].raw_amount == "1000000"


def test_emit_all_matches_keys_by_instruction():
    tx = make_tx("sigM", [checked_ix("1000000"), other_ix()], inner=[checked_ix("2000000")])
    events = parse_transfers(tx, USDT_MINT, emit_all=True)
    assert [e.record_key for e in events] == ["sigM#0", "sigM#0.0"]
    assert [e.signature for e in events] == ["sigM", "sigM"]


def test_signature_and_slot_taken_from_transaction():
    tx = make_tx("sigX", [checked_ix("1000000")], slot=321, block_time=4_321)
    (ev,) = parse_transfers(tx, USDT_MINT)
    assert ev.signature == "sigX"
    assert ev.slot == 321
    assert ev.block_time == 4_321


def test_malformed_inputs_yield_nothing():
    assert parse_transfers(None, USDT_MINT) == []
    assert parse_transfers({}, USDT_MINT) == []
    tx = make_tx("sigB", [checked_ix("not-a-number")])
    assert parse_transfers(tx, USDT_MINT) == []


@pytest.fixture
def extractor(rpc, sleep):
    return TransferExtractor(rpc, USDT_MINT, batch_size=10, batch_delay_sec=0.05, sleep=sleep)


def test_two_transfers_in_one_window_scenario(chain, extractor):
    """Block 100 = [s1, s2]; s1 moves 250.0 tracked units A -> B, s2 is unrelated."""
    chain.add_block(100, 1_000, ["s1", "s2"])
    chain.add_tx("s1", make_tx("s1", [checked_ix("250000000", source="A", destination="B")]))
    chain.add_tx("s2", make_tx("s2", [other_ix()]))
    block = SlotBlock(slot=100, block_time=1_000, signatures=("s1", "s2"))
    events = asyncio.run(extractor.extract_block(block))
    assert len(events) == 1
    assert events[0].signature == "s1"
    assert events[0].decimal_amount == Decimal("250.0")
    assert (events[0].source, events[0].destination) == ("A", "B")
    assert events[0].slot == 100
    assert events[0].block_time == 1_000


def test_fault_isolation_one_of_fifty(chain, extractor, sleep):
    sigs = [f"sig{i}" for i in range(50)]
    for i, sig in enumerate(sigs):
        chain.add_tx(sig, make_tx(sig, [checked_ix(str((i + 1) * 1_000_000))]))
    chain.fail("getTransaction", "sig17", HTTP_ERROR)
    block = SlotBlock(slot=5, block_time=50, signatures=tuple(sigs))
    events = asyncio.run(extractor.extract_block(block))
    assert len(events) == 49
    assert "sig17" not in {e.signature for e in events}
    assert extractor.stats.failed == 1
    assert extractor.stats.fetched == 49
    # 5 batches of 10 -> 4 inter-batch delays
    assert sleep.delays == [0.05] * 4


def test_missing_transaction_skipped_silently(chain, extractor):
    chain.add_tx("gone", None)
    chain.add_tx("ok", make_tx("ok", [checked_ix("1000000")]))
    block = SlotBlock(slot=1, block_time=10, signatures=("gone", "ok"))
    events = asyncio.run(extractor.extract_block(block))
    assert [e.signature for e in events] == ["ok"]
    assert extractor.stats.missing == 1
    assert extractor.stats.failed == 0


def test_signature_cap_per_block(chain, rpc):
    sigs = [f"s{i}" for i in range(30)]
    for sig in sigs:
        chain.add_tx(sig, make_tx(sig, [checked_ix("1000000")]))
    extractor = TransferExtractor(rpc, USDT_MINT, max_signatures_per_block=12, sleep=RecordingSleep())
    events = asyncio.run(extractor.extract_block(SlotBlock(slot=1, block_time=1, signatures=tuple(sigs))))
    assert len(events) == 12
    assert chain.count("getTransaction") == 12


def test_extract_signature_uses_transaction_slot(chain, extractor):
    chain.add_tx("one", make_tx("one", [checked_ix("3000000")], slot=77, block_time=7_700))
    (ev,) = asyncio.run(extractor.extract_signature("one"))
    assert ev.slot == 77
    assert ev.block_time == 7_700
    assert asyncio.run(extractor.extract_signature("unknown")) == []
