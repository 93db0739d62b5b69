from __future__ import annotations

import threading

import pytest

from passkey_rp.challenges import DatabaseCeremonyStore, MemoryCeremonyStore, generate_request_id
from passkey_rp.records import CeremonyKind, ChallengeOptions, PendingCeremonyRequest, UserIdentity


def _pending(clock, request_id: str, kind: CeremonyKind = CeremonyKind.REGISTRATION) -> PendingCeremonyRequest:
    return PendingCeremonyRequest(
        request_id=request_id,
        kind=kind,
        created_at=clock(),
        challenge=ChallengeOptions(
            public_key={"challenge": "abc", "authenticatorSelection": {"authenticatorAttachment": "platform"}},
            state={"challenge": "abc", "user_verification": "preferred"},
            username="alice",
        ),
        username="alice",
        user_identity=UserIdentity(id=b"\x01\x02\x03", name="alice", display_name="Alice"),
    )


@pytest.fixture(params=["memory", "database"])
def store(request, database, clock):
    if request.param == "memory":
        return MemoryCeremonyStore(60, clock=clock)
    return DatabaseCeremonyStore(database, 60, clock=clock)


def test_request_ids_are_unique_and_long():
    ids = {generate_request_id() for _ in range(100)}
    assert len(ids) == 100
    assert all(len(request_id) >= 43 for request_id in ids)


def test_consume_returns_request_once(store, clock):
    pending = _pending(clock, "req-1")
    store.put("req-1", pending)

    consumed = store.consume("req-1", CeremonyKind.REGISTRATION)

    assert consumed == pending
    assert consumed.challenge.authenticator_attachment == "platform"
    assert store.consume("req-1", CeremonyKind.REGISTRATION) is None
    assert store.get_if_present("req-1") is None


def test_consume_unknown_id(store):
    assert store.consume("missing", CeremonyKind.AUTHENTICATION) is None


def test_consume_with_wrong_kind_leaves_request_pending(store, clock):
    store.put("req-1", _pending(clock, "req-1", CeremonyKind.REGISTRATION))

    assert store.consume("req-1", CeremonyKind.AUTHENTICATION) is None
    assert store.consume("req-1", CeremonyKind.REGISTRATION) is not None


def test_expired_request_is_absent(store, clock):
    store.put("req-1", _pending(clock, "req-1"))
    clock.advance(60)

    assert store.get_if_present("req-1") is None
    assert store.consume("req-1", CeremonyKind.REGISTRATION) is None


def test_request_within_ttl_is_present(store, clock):
    store.put("req-1", _pending(clock, "req-1"))
    clock.advance(59)

    assert store.get_if_present("req-1") is not None
    assert store.consume("req-1", CeremonyKind.REGISTRATION) is not None


def test_invalidate(store, clock):
    store.put("req-1", _pending(clock, "req-1"))
    store.invalidate("req-1")
    store.invalidate("req-1")

    assert store.get_if_present("req-1") is None


def test_purge_expired(store, clock):
    store.put("old", _pending(clock, "old"))
    clock.advance(30)
    store.put("new", _pending(clock, "new"))
    clock.advance(31)

    assert store.purge_expired() == 1
    assert store.get_if_present("new") is not None


def test_concurrent_consume_has_single_winner(store, clock):
    store.put("req-1", _pending(clock, "req-1"))
    workers = 6
    barrier = threading.Barrier(workers)
    results = []
    errors = []

    def worker() -> None:
        barrier.wait()
        try:
            results.append(store.consume("req-1", CeremonyKind.REGISTRATION))
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len([result for result in results if result is not None]) == 1


def test_memory_store_len(clock):
    store = MemoryCeremonyStore(60, clock=clock)
    store.put("a", _pending(clock, "a"))
    store.put("b", _pending(clock, "b"))
    store.consume("a", CeremonyKind.REGISTRATION)

    assert len(store) == 1


def test_database_store_round_trips_request(database, clock):
    store = DatabaseCeremonyStore(database, 60, clock=clock)
    pending = _pending(clock, "req-1")
    store.put("req-1", pending)

    fetched = store.get_if_present("req-1")

    assert fetched == pending
    assert fetched.user_identity.id == b"\x01\x02\x03"
    assert fetched.created_at == clock()
