import asyncio
from types import SimpleNamespace

import pytest

from homebid.common.exceptions import ConflictError
from homebid.core.locking import KeyedLock, Reservations, release_reservations


def _session():
    """Reservations only read and write the session's ``info`` dict."""
    return SimpleNamespace(info={})


@pytest.mark.asyncio
async def test_same_key_is_serialized():
    locks = KeyedLock("test")
    order = []

    async def worker(name: str):
        async with locks.hold("contract-1"):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"))
    assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])


@pytest.mark.asyncio
async def test_different_keys_do_not_block():
    locks = KeyedLock("test")
    async with locks.hold("one"):
        assert locks.is_locked("one")
        assert not locks.is_locked("two")
        async with locks.hold("two"):
            assert locks.is_locked("two")


@pytest.mark.asyncio
async def test_locks_are_dropped_when_idle():
    locks = KeyedLock("test")
    async with locks.hold("k"):
        assert len(locks) == 1
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_lock_released_on_error():
    locks = KeyedLock("test")
    with pytest.raises(RuntimeError):
        async with locks.hold("k"):
            raise RuntimeError("boom")
    assert not locks.is_locked("k")
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_reservation_conflicts_until_finished():
    ops = Reservations("Escrow")
    db = _session()
    await ops.reserve(db, "c1", "refund")
    assert ops.current("c1") == "refund"
    with pytest.raises(ConflictError):
        await ops.reserve(db, "c1", "release_final")
    await ops.ensure_idle(db, "c2")

    ops.finish("c1")
    await ops.reserve(db, "c1", "release_final")
    assert ops.current("c1") == "release_final"
    ops.finish("c1")


@pytest.mark.asyncio
async def test_reservation_held_for_other_sessions_until_released(reservation_store):
    ops = Reservations("Escrow")
    mine, theirs = _session(), _session()

    await ops.reserve(mine, "c1", "refund")
    ops.finish("c1")
    # The session that reserved has not committed yet.
    with pytest.raises(ConflictError):
        await ops.reserve(theirs, "c1", "release_final")
    with pytest.raises(ConflictError):
        await ops.ensure_idle(theirs, "c1")
    await ops.ensure_idle(mine, "c1")

    await release_reservations(mine)
    assert await reservation_store.get("homebid:reservation:escrow:c1") is None
    await ops.reserve(theirs, "c1", "release_final")
    ops.finish("c1")


@pytest.mark.asyncio
async def test_reservation_expires_with_ttl(reservation_store):
    ops = Reservations("Dispute", ttl_seconds=30)
    db = _session()
    assert await ops.claim(db, "d1", "refund")
    ops.finish("d1")

    ttl = await reservation_store.ttl("homebid:reservation:dispute:d1")
    assert 0 < ttl <= 30


@pytest.mark.asyncio
async def test_concurrent_claims_have_one_winner():
    ops = Reservations("Dispute")
    db = _session()

    results = await asyncio.gather(ops.claim(db, "d1", "rework"), ops.claim(db, "d1", "refund"))

    assert sorted(results) == [False, True]
    assert ops.current("d1") in ("rework", "refund")
    ops.finish("d1")


@pytest.mark.asyncio
async def test_release_leaves_other_sessions_reservations(reservation_store):
    ops = Reservations("Escrow")
    mine, theirs = _session(), _session()
    await ops.reserve(theirs, "c1", "refund")
    ops.finish("c1")

    await release_reservations(mine)
    assert await reservation_store.get("homebid:reservation:escrow:c1") is not None
