"""
Tests for IngestionEngine: full cycles over the fake chain, cursor semantics,
re-scan safety, and the live query / lookup paths.
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from decimal import Decimal

import pytest

from fakes import HTTP_ERROR, USDT_MINT, checked_ix, make_tx, other_ix, transfer_ix
from ledger_watchdog.core.exceptions import TransportError
from ledger_watchdog.ingestion import build_engine
from ledger_watchdog.ingestion.engine import STATUS_CAUGHT_UP, STATUS_COMPLETED, STATUS_SKIPPED

HEAD = 1000
SOURCE = "rpc_polling"


def build_dense_chain(chain, head=HEAD, txs=None):
    """One produced slot per second ending at chain.now; txs maps slot -> [(signature, tx)]."""
    txs = txs or {}
    for slot in range(1, head + 1):
        entries = txs.get(slot, [])
        chain.add_block(slot, chain.now - (head - slot), [sig for sig, _ in entries])
        for sig, tx in entries:
            chain.add_tx(sig, tx)


def window_txs():
    return {
        950: [("s1", make_tx("s1", [checked_ix("250000000", source="A", destination="B")]))],
        960: [("s2", make_tx("s2", [other_ix()]))],
        970: [("s3", make_tx("s3", [transfer_ix("1000000")], balance_mints=[USDT_MINT]))],
    }


@pytest.fixture
def make_engine(settings, rpc, db, chain, sleep):
    def factory(**overrides):
        cfg = dataclasses.replace(settings, lookback_sec=60.0, **overrides)
        return build_engine(cfg, rpc=rpc, db=db, sleep=sleep, clock=lambda: chain.now)

    return factory


def test_first_cycle_locates_floor_and_writes_records(chain, db, make_engine):
    build_dense_chain(chain, txs=window_txs())
    engine = make_engine()
    result = asyncio.run(engine.run_cycle())

    assert result.status == STATUS_COMPLETED
    assert result.window_start == 940
    assert result.window_end == HEAD
    assert result.slots_scanned == 61
    assert result.records_written == 2
    s1 = db.get_transfer("s1")
    assert s1.amount == Decimal("250")
    assert (s1.source, s1.destination) == ("A", "B")
    assert s1.slot == 950
    assert s1.timestamp == chain.now - 50
    assert s1.mint == USDT_MINT
    assert db.get_transfer("s2") is None
    assert db.get_transfer("s3").amount == Decimal("1")
    cursor = db.get_cursor(SOURCE)
    assert cursor.last_slot == HEAD
    assert cursor.last_signature == "s3"


def test_next_cycle_resumes_after_cursor_without_locating(chain, db, make_engine):
    build_dense_chain(chain, txs=window_txs())
    engine = make_engine()
    asyncio.run(engine.run_cycle())

    chain.now += 10
    for slot in range(HEAD + 1, HEAD + 11):
        chain.add_block(slot, chain.now - (HEAD + 10 - slot), [])
    calls_before = chain.count("getBlockTime")
    result = asyncio.run(engine.run_cycle())

    assert result.window_start == HEAD + 1
    assert result.window_end == HEAD + 10
    # only the cursor slot's time was probed
    assert chain.count("getBlockTime") - calls_before == 1
    assert db.get_cursor(SOURCE).last_slot == HEAD + 10


def test_caught_up_touches_cursor_only(chain, db, make_engine):
    build_dense_chain(chain)
    engine = make_engine()
    asyncio.run(engine.run_cycle())
    before = db.get_cursor(SOURCE)
    result = asyncio.run(engine.run_cycle())
    assert result.status == STATUS_CAUGHT_UP
    after = db.get_cursor(SOURCE)
    assert after.last_slot == before.last_slot == HEAD
    assert chain.count("getBlocks") == 1


def test_stale_cursor_is_bounded_by_lookback(chain, db, make_engine):
    build_dense_chain(chain)
    db.advance_cursor(SOURCE, 100)
    result = asyncio.run(make_engine().run_cycle())
    assert result.window_start == 940


def test_window_truncated_to_max_slots(chain, db, make_engine):
    build_dense_chain(chain, txs=window_txs())
    engine = make_engine(max_slots_per_cycle=20)
    result = asyncio.run(engine.run_cycle())
    assert result.truncated is True
    assert result.window_end == 959
    assert db.get_cursor(SOURCE).last_slot == 959
    assert db.get_transfer("s1") is not None
    assert db.get_transfer("s3") is None

    result2 = asyncio.run(engine.run_cycle())
    assert result2.window_start == 960
    assert db.get_transfer("s3") is not None


def test_cursor_not_advanced_when_sink_write_fails(chain, db, make_engine, monkeypatch):
    build_dense_chain(chain, txs=window_txs())
    engine = make_engine()

    def boom(records):
        raise RuntimeError("disk full")

    monkeypatch.setattr(engine.db, "upsert_transfers", boom)
    with pytest.raises(RuntimeError):
        asyncio.run(engine.run_cycle())
    assert db.get_cursor(SOURCE) is None
    assert len(engine.dedup) == 0


def test_rescan_after_crash_before_cursor_advance_is_safe(chain, db, make_engine, monkeypatch):
    build_dense_chain(chain, txs=window_txs())
    engine = make_engine()
    real_advance = engine.db.advance_cursor

    def crash(*args, **kwargs):
        raise RuntimeError("crashed before cursor write")

    monkeypatch.setattr(engine.db, "advance_cursor", crash)
    with pytest.raises(RuntimeError):
        asyncio.run(engine.run_cycle())
    assert len(db.list_transfers()) == 2
    assert db.get_cursor(SOURCE) is None

    monkeypatch.setattr(engine.db, "advance_cursor", real_advance)
    result = asyncio.run(engine.run_cycle())
    assert result.window_start == 940
    assert result.records_written == 2
    assert sorted(r.signature for r in db.list_transfers()) == ["s1", "s3"]
    assert db.get_cursor(SOURCE).last_slot == HEAD


def test_same_block_twice_produces_no_duplicates(chain, db, make_engine):
    build_dense_chain(chain, txs=window_txs())
    engine = make_engine()
    asyncio.run(engine.run_cycle())
    # fresh engine (empty dedup guard) over the same window via a reset cursor source
    other = make_engine(source="replay")
    asyncio.run(other.run_cycle())
    assert len(db.list_transfers()) == 2


def test_dedup_skips_already_emitted_signature(chain, db, make_engine):
    build_dense_chain(chain, txs=window_txs())
    engine = make_engine()
    asyncio.run(engine.run_cycle())

    chain.now += 5
    chain.add_block(HEAD + 1, chain.now - 4, ["s1"])
    for slot in range(HEAD + 2, HEAD + 6):
        chain.add_block(slot, chain.now - (HEAD + 5 - slot), [])
    result = asyncio.run(engine.run_cycle())
    assert result.duplicates == 1
    assert result.records_written == 0
    assert db.get_cursor(SOURCE).last_slot == HEAD + 5


def test_inactive_source_skips_cycle(chain, db, make_engine):
    build_dense_chain(chain)
    db.set_cursor_active(SOURCE, False)
    result = asyncio.run(make_engine().run_cycle())
    assert result.status == STATUS_SKIPPED
    assert chain.count("getSlot") == 0


def test_head_slot_failure_aborts_cycle(chain, db, make_engine):
    build_dense_chain(chain)
    chain.fail("getSlot", None, HTTP_ERROR)
    with pytest.raises(TransportError):
        asyncio.run(make_engine().run_cycle())
    assert db.get_cursor(SOURCE) is None


def test_zero_amount_transfer_not_written(chain, db, make_engine):
    build_dense_chain(chain, txs={955: [("z", make_tx("z", [checked_ix("0")]))]})
    result = asyncio.run(make_engine().run_cycle())
    assert result.events == 1
    assert result.records_written == 0
    assert db.get_cursor(SOURCE).last_slot == HEAD


def test_emit_all_matches_writes_one_record_per_instruction(chain, db, make_engine):
    tx = make_tx("multi", [checked_ix("1000000"), checked_ix("2000000")])
    build_dense_chain(chain, txs={950: [("multi", tx)]})
    asyncio.run(make_engine(emit_all_matches=True).run_cycle())
    assert sorted(r.signature for r in db.list_transfers()) == ["multi#0", "multi#1"]


def test_fetch_recent_newest_first(chain, make_engine):
    txs = {
        slot: [(f"live{slot}", make_tx(f"live{slot}", [checked_ix("1000000")]))] for slot in (992, 995, 998)
    }
    txs[980] = [("old", make_tx("old", [checked_ix("1000000")]))]
    build_dense_chain(chain, txs=txs)
    engine = make_engine()

    events = asyncio.run(engine.fetch_recent(limit=50, lookback_sec=86_400))
    assert [e.slot for e in events] == [998, 995, 992]
    assert engine.db.get_transfer("live998") is None

    top = asyncio.run(engine.fetch_recent(limit=2))
    assert [e.signature for e in top] == ["live998", "live995"]


def test_fetch_recent_returns_empty_on_failure(chain, make_engine):
    build_dense_chain(chain)
    chain.fail("getSlot", None, HTTP_ERROR)
    assert asyncio.run(make_engine().fetch_recent()) == []


def test_fetch_transfer_lookup(chain, make_engine):
    chain.add_tx("one", make_tx("one", [checked_ix("3000000")], slot=42, block_time=4_200))
    engine = make_engine()
    event = asyncio.run(engine.fetch_transfer("one"))
    assert event.slot == 42
    assert event.decimal_amount == Decimal("3")
    assert asyncio.run(engine.fetch_transfer("missing")) is None


def test_build_engine_applies_dedup_size(make_engine):
    engine = make_engine(dedup_max_size=7)
    assert engine.dedup.max_size == 7


def test_slow_sink_write_does_not_stall_event_loop(chain, db, make_engine, monkeypatch):
    build_dense_chain(chain, txs=window_txs())
    engine = make_engine()
    real_upsert = engine.db.upsert_transfers

    def slow_upsert(records):
        time.sleep(0.3)
        return real_upsert(records)

    monkeypatch.setattr(engine.db, "upsert_transfers", slow_upsert)

    async def cycle_with_ticker():
        gaps: list[float] = []
        done = asyncio.Event()

        async def ticker():
            last = time.monotonic()
            while not done.is_set():
                await asyncio.sleep(0.01)
                now = time.monotonic()
                gaps.append(now - last)
                last = now

        task = asyncio.create_task(ticker())
        try:
            result = await engine.run_cycle()
        finally:
            done.set()
            await task
        return result, max(gaps, default=0.0)

    result, worst_gap = asyncio.run(cycle_with_ticker())
    assert result.records_written == 2
    assert worst_gap < 0.2
    assert db.get_cursor(SOURCE).last_slot == HEAD


def test_stored_transfer_lookup_matches_instruction_keys(chain, make_engine):
    tx = make_tx("multi", [checked_ix("1000000"), checked_ix("2000000")])
    build_dense_chain(chain, txs={950: [("multi", tx)]})
    engine = make_engine(emit_all_matches=True)
    asyncio.run(engine.run_cycle())
    record = asyncio.run(engine.get_stored_transfer("multi"))
    assert record.signature == "multi#0"
    assert record.amount == Decimal("1")
    assert asyncio.run(engine.get_stored_transfer("missing")) is None
