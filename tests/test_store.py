import threading
from datetime import timedelta

import pytest

from sqlmodel import create_engine

from sooner.errors import AlreadyQueued, InvalidPartySize, InvalidTransition, NotFound, StoreUnavailable
from sooner.models import EntryStatus
from sooner.store import QueueStore, clamp_party_size, normalize_venue_id


def test_append_assigns_increasing_positions_per_venue(store):
    first = store.append("v1", 2, user_id="u1")
    second = store.append("v1", 3, user_id="u2")
    other = store.append("v2", 1, name="Walk In")

    assert (first.position, second.position) == (1, 2)
    assert other.position == 1
    assert first.status == EntryStatus.WAITING
    assert first.near_turn_at is None and first.arrival_deadline is None


def test_timestamps_round_trip_through_the_store(store, clock):
    entry = store.append("v1", 2, user_id="u1")
    assert store.promote_near_turn(entry, clock.now, timedelta(minutes=45))

    stored = store.get(entry.id)
    assert stored.joined_at == clock.now
    assert stored.updated_at == clock.now
    assert stored.near_turn_at == clock.now
    assert stored.arrival_deadline == clock.now + timedelta(minutes=45)
    assert stored.joined_at.tzinfo is None


def test_positions_are_not_reused_after_departures(store):
    first = store.append("v1", 2)
    store.transition(first.id, EntryStatus.SERVED)
    assert store.append("v1", 2).position == 2


@pytest.mark.parametrize("size", [0, 13, -1, True, "4"])
def test_append_rejects_invalid_party_size(store, size):
    with pytest.raises(InvalidPartySize):
        store.append("v1", size)
    assert store.list_waiting("v1") == []


def test_clamp_party_size():
    assert clamp_party_size(50) == 12
    assert clamp_party_size(0) == 1
    assert clamp_party_size(None) == 1
    assert clamp_party_size(5) == 5


def test_list_waiting_is_ordered_and_skips_terminal(store):
    a = store.append("v1", 1)
    b = store.append("v1", 2)
    c = store.append("v1", 3)
    store.transition(b.id, EntryStatus.CANCELED)

    assert [entry.id for entry in store.list_waiting("v1")] == [a.id, c.id]


def test_venue_references_share_one_canonical_form(store):
    store.append("65A1F0C2B3D4E5F60718293A", 2)
    store.append(" 65a1f0c2b3d4e5f60718293a ", 2)

    assert normalize_venue_id("65A1F0C2B3D4E5F60718293A") == "65a1f0c2b3d4e5f60718293a"
    assert len(store.list_waiting("65a1f0c2b3d4e5f60718293a")) == 2


@pytest.mark.parametrize("value", [None, "", "   ", "x" * 65])
def test_normalize_venue_id_rejects_unusable_values(value):
    with pytest.raises(NotFound):
        normalize_venue_id(value)


def test_transition_to_terminal_status(store):
    entry = store.append("v1", 2)
    result = store.transition(entry.id, "served", venue_id="v1")

    assert result.changed
    assert result.entry.status == EntryStatus.SERVED
    assert store.list_waiting("v1") == []


def test_terminal_entry_transition_is_idempotent(store):
    entry = store.append("v1", 2)
    store.transition(entry.id, EntryStatus.SERVED)

    again = store.transition(entry.id, EntryStatus.EXPIRED)
    assert not again.changed
    assert again.entry.status == EntryStatus.SERVED


def test_terminal_entry_cannot_wait_again(store):
    entry = store.append("v1", 2)
    store.transition(entry.id, EntryStatus.SERVED)

    with pytest.raises(InvalidTransition):
        store.transition(entry.id, EntryStatus.WAITING)
    assert store.get(entry.id).status == EntryStatus.SERVED


def test_waiting_to_waiting_updates_fields_only(store):
    entry = store.append("v1", 2)
    result = store.transition(entry.id, EntryStatus.WAITING, values={"timer_paused": True})

    assert result.changed
    assert result.entry.status == EntryStatus.WAITING
    assert result.entry.timer_paused


@pytest.mark.parametrize("field", ["status", "updated_at", "venue_id"])
def test_transition_refuses_store_managed_fields(store, field):
    entry = store.append("v1", 2)
    with pytest.raises(InvalidTransition):
        store.transition(entry.id, EntryStatus.WAITING, values={field: "x"})
    assert store.get(entry.id).status == EntryStatus.WAITING


def test_unknown_status_is_invalid(store):
    entry = store.append("v1", 2)
    with pytest.raises(InvalidTransition):
        store.transition(entry.id, "seated")


def test_transition_missing_or_foreign_entry(store):
    entry = store.append("v1", 2)
    with pytest.raises(NotFound):
        store.transition(9999, EntryStatus.SERVED)
    with pytest.raises(NotFound):
        store.transition(entry.id, EntryStatus.SERVED, venue_id="v2")
    assert store.get(entry.id).status == EntryStatus.WAITING


def test_pause_timer(store):
    entry = store.append("v1", 2)
    assert store.pause_timer(entry.id, venue_id="v1").timer_paused

    store.transition(entry.id, EntryStatus.CANCELED)
    with pytest.raises(InvalidTransition):
        store.pause_timer(entry.id)


def test_find_active_and_live_rank(store):
    first = store.append("v1", 2, user_id="u1")
    second = store.append("v1", 2, user_id="u2")
    assert store.live_rank(second) == 2

    store.transition(first.id, EntryStatus.SERVED)
    assert store.find_active("u1") is None
    assert store.find_active("u2").id == second.id
    assert store.live_rank(second) == 1


def test_customer_holds_one_waiting_entry(store):
    first = store.append("v1", 2, user_id="u1")
    with pytest.raises(AlreadyQueued):
        store.append("v2", 2, user_id="u1")

    store.transition(first.id, EntryStatus.SERVED)
    assert store.append("v2", 2, user_id="u1").venue_id == "v2"


def test_unreachable_database_is_store_unavailable(tmp_path):
    store = QueueStore(create_engine(f"sqlite:///{tmp_path / 'missing' / 'queue.db'}"))
    with pytest.raises(StoreUnavailable):
        store.list_waiting("v1")
    with pytest.raises(StoreUnavailable):
        store.append("v1", 2)


def test_mutations_notify_venue_subscribers(store):
    seen = []
    subscription = store.on_mutation("v1", seen.append)

    entry = store.append("v1", 2)
    store.append("v2", 2)
    store.transition(entry.id, EntryStatus.SERVED)
    # no-op transitions do not fire
    store.transition(entry.id, EntryStatus.SERVED)
    assert seen == ["v1", "v1"]

    subscription.close()
    store.append("v1", 2)
    assert seen == ["v1", "v1"]
    assert store.bus.subscriber_count() == 0


def test_failing_subscriber_does_not_break_writes(store):
    def broken(_venue_id):
        raise RuntimeError("dashboard gone")

    store.on_mutation("v1", broken)
    entry = store.append("v1", 2)
    assert entry.id is not None


def test_concurrent_joins_get_distinct_positions(file_engine):
    store = QueueStore(file_engine)
    barrier = threading.Barrier(4)
    errors = []

    def join_many():
        barrier.wait()
        for _ in range(5):
            try:
                store.append("busy", 2)
            except Exception as exc:  # surfaced by the assertion below
                errors.append(exc)

    threads = [threading.Thread(target=join_many) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    positions = [entry.position for entry in store.list_waiting("busy")]
    assert sorted(positions) == list(range(1, 21))


def test_serve_and_expire_race_has_one_winner(file_engine):
    store = QueueStore(file_engine)
    entry = store.append("v1", 2)
    barrier = threading.Barrier(2)
    results = {}

    def move(status):
        barrier.wait()
        results[status] = store.transition(entry.id, status)

    threads = [
        threading.Thread(target=move, args=(EntryStatus.SERVED,)),
        threading.Thread(target=move, args=(EntryStatus.EXPIRED,)),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    winners = [status for status, result in results.items() if result.changed]
    assert len(winners) == 1
    assert store.get(entry.id).status == winners[0]


def test_simultaneous_joins_by_one_customer_keep_one_entry(file_engine):
    store = QueueStore(file_engine)
    barrier = threading.Barrier(2)
    joined, refused, errors = [], [], []

    def join(venue_id):
        barrier.wait()
        try:
            joined.append(store.append(venue_id, 2, user_id="u1"))
        except AlreadyQueued as exc:
            refused.append(exc)
        except Exception as exc:  # surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=join, args=(venue_id,)) for venue_id in ("v1", "v2")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(joined) == 1 and len(refused) == 1
    assert store.find_active("u1").id == joined[0].id
