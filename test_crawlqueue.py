"""Test suite for the crawl item queue."""

import threading

import pytest

from crawlqueue.exceptions import ContractViolation
from crawlqueue.models import Item, ItemState
from crawlqueue.queue import QueueManager


def _enqueue(manager, identifier, configuration="site1", **data):
    assert manager.enqueue(Item(configuration=configuration, identifier=identifier, data=data))


def _claimed(manager, identifier, token="tok1", configuration="site1"):
    _enqueue(manager, identifier, configuration)
    assert manager.claim_one(configuration, identifier, token)


def test_item_defaults():
    item = Item(configuration="site1", identifier="/a")
    assert item.state == ItemState.PENDING
    assert item.message == ""
    assert item.hash == ""
    assert item.data == {}


def test_enqueue_creates_pending_item(manager):
    _enqueue(manager, "/a", depth=2)

    item = manager.get("site1", "/a")
    assert item is not None
    assert item.state == ItemState.PENDING
    assert item.data == {"depth": 2}
    assert item.message == ""
    assert item.hash == ""
    assert item.timestamp > 0


def test_enqueue_requires_configuration_and_identifier(manager):
    with pytest.raises(ContractViolation):
        manager.enqueue(Item(configuration="", identifier="/a"))
    with pytest.raises(ContractViolation):
        manager.enqueue(Item(configuration="site1", identifier=""))
    assert manager.count_all() == 0


def test_same_identifier_in_other_configuration_is_distinct(manager):
    _enqueue(manager, "/a", configuration="site1")
    _enqueue(manager, "/a", configuration="site2")
    assert manager.count_all() == 2


def test_enqueue_twice_keeps_one_row_with_latest_data(manager):
    _enqueue(manager, "/a", version=1)
    _enqueue(manager, "/a", version=2)

    items = manager.list_all()
    assert len(items) == 1
    assert items[0].data == {"version": 2}
    assert items[0].state == ItemState.PENDING


def test_concurrent_enqueues_keep_one_row(manager):
    producers = 8
    barrier = threading.Barrier(producers)
    results = []
    lock = threading.Lock()

    def produce(n):
        barrier.wait()
        stored = manager.enqueue(Item(configuration="site1", identifier="/a", data={"producer": n}))
        with lock:
            results.append(stored)

    threads = [threading.Thread(target=produce, args=(n,)) for n in range(producers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results == [True] * producers
    assert manager.count_all() == 1
    item = manager.get("site1", "/a")
    assert item.state == ItemState.PENDING
    assert item.data["producer"] in range(producers)


@pytest.mark.parametrize("terminal", [ItemState.SUCCESS, ItemState.ERROR])
def test_reenqueue_resets_finished_item(manager, terminal):
    _claimed(manager, "/a")
    assert manager.resolve(Item(configuration="site1", identifier="/a", state=terminal, message="done"))

    _enqueue(manager, "/a")
    item = manager.get("site1", "/a")
    assert item.state == ItemState.PENDING
    assert item.message == ""
    assert item.hash == ""


def test_reenqueue_resets_in_progress_item(manager):
    _claimed(manager, "/a")

    _enqueue(manager, "/a")
    item = manager.get("site1", "/a")
    assert item.state == ItemState.PENDING
    assert item.hash == ""
    assert manager.find_in_progress_by_token("tok1") == []


def test_claim_sets_token_and_state(manager):
    _claimed(manager, "/a", token="tok1")

    item = manager.get("site1", "/a")
    assert item.state == ItemState.IN_PROGRESS
    assert item.hash == "tok1"


def test_claim_only_once(manager):
    _enqueue(manager, "/a")
    assert manager.claim_one("site1", "/a", "tok1")
    assert not manager.claim_one("site1", "/a", "tok2")
    assert manager.get("site1", "/a").hash == "tok1"


def test_claim_missing_item(manager):
    assert not manager.claim_one("site1", "/missing", "tok1")
    assert manager.count_all() == 0


@pytest.mark.parametrize("terminal", [ItemState.SUCCESS, ItemState.ERROR])
def test_claim_finished_item_does_nothing(manager, terminal):
    _claimed(manager, "/a")
    manager.resolve(Item(configuration="site1", identifier="/a", state=terminal, message="m"))
    before = manager.get("site1", "/a")

    assert not manager.claim_one("site1", "/a", "tok2")
    assert manager.get("site1", "/a") == before


def test_claim_requires_token(manager):
    _enqueue(manager, "/a")
    with pytest.raises(ContractViolation):
        manager.claim_one("site1", "/a", "")
    assert manager.get("site1", "/a").state == ItemState.PENDING


def test_concurrent_claims_have_one_winner(manager):
    _enqueue(manager, "/a")
    contenders = 8
    barrier = threading.Barrier(contenders)
    results = []
    lock = threading.Lock()

    def contend(n):
        barrier.wait()
        won = manager.claim_one("site1", "/a", f"tok{n}")
        with lock:
            results.append(won)

    threads = [threading.Thread(target=contend, args=(n,)) for n in range(contenders)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1
    assert len(manager.list_in_progress()) == 1


@pytest.mark.parametrize("state", [ItemState.PENDING, ItemState.IN_PROGRESS])
def test_resolve_rejects_non_terminal_state(manager, state):
    _claimed(manager, "/a")
    before = manager.get("site1", "/a")

    with pytest.raises(ContractViolation):
        manager.resolve(Item(configuration="site1", identifier="/a", state=state, message="x"))
    assert manager.get("site1", "/a") == before


def test_resolve_sets_message_and_clears_token(manager):
    _claimed(manager, "/a")
    assert manager.resolve(Item(configuration="site1", identifier="/a", state=ItemState.ERROR, message="404"))

    item = manager.get("site1", "/a")
    assert item.state == ItemState.ERROR
    assert item.message == "404"
    assert item.hash == ""


def test_resolve_does_not_clobber_reenqueued_item(manager):
    _claimed(manager, "/a")
    _enqueue(manager, "/a")

    assert not manager.resolve(Item(configuration="site1", identifier="/a", state=ItemState.SUCCESS))
    assert manager.get("site1", "/a").state == ItemState.PENDING


def test_resolve_checks_claim_token_when_given(manager):
    _claimed(manager, "/a", token="tok1")

    stale = Item(configuration="site1", identifier="/a", state=ItemState.SUCCESS, hash="other")
    assert not manager.resolve(stale)
    assert manager.get("site1", "/a").state == ItemState.IN_PROGRESS

    owned = Item(configuration="site1", identifier="/a", state=ItemState.SUCCESS, hash="tok1")
    assert manager.resolve(owned)


def test_resolve_missing_item(manager):
    assert not manager.resolve(Item(configuration="site1", identifier="/nope", state=ItemState.SUCCESS))


def test_claim_batch_is_fifo(manager):
    for identifier in ("/c", "/a", "/b"):
        _enqueue(manager, identifier)

    batch = manager.claim_batch()
    assert [item.identifier for item in batch] == ["/c", "/a", "/b"]
    timestamps = [item.timestamp for item in batch]
    assert timestamps == sorted(timestamps)


def test_claim_batch_limit_returns_oldest(manager):
    for identifier in ("/first", "/second", "/third"):
        _enqueue(manager, identifier)

    batch = manager.claim_batch(limit=1)
    assert [item.identifier for item in batch] == ["/first"]


def test_claim_batch_does_not_claim(manager):
    _enqueue(manager, "/a")
    manager.claim_batch()
    assert manager.get("site1", "/a").state == ItemState.PENDING


def test_claim_batch_skips_non_pending(manager):
    _claimed(manager, "/a")
    _enqueue(manager, "/b")
    assert [item.identifier for item in manager.claim_batch()] == ["/b"]


def test_reenqueue_moves_item_to_back(manager):
    _enqueue(manager, "/a")
    _enqueue(manager, "/b")
    _enqueue(manager, "/a")
    assert [item.identifier for item in manager.claim_batch()] == ["/b", "/a"]


def test_claim_batch_empty(manager):
    assert manager.claim_batch() == []
    assert manager.claim_batch(limit=5) == []


def test_scenario_claim_and_resolve(manager):
    _enqueue(manager, "/a")
    assert [item.identifier for item in manager.list_pending()] == ["/a"]

    assert manager.claim_one("site1", "/a", "tok1")
    assert not manager.claim_one("site1", "/a", "tok2")

    done = Item(configuration="site1", identifier="/a", state=ItemState.SUCCESS, message="ok")
    assert manager.resolve(done)

    assert [item.identifier for item in manager.list_successful()] == ["/a"]
    assert manager.list_pending() == []
    assert manager.list_successful()[0].message == "ok"


def test_queries_and_counts(manager):
    for identifier in ("/ok", "/bad", "/busy", "/new"):
        _enqueue(manager, identifier)
    for identifier in ("/ok", "/bad", "/busy"):
        assert manager.claim_one("site1", identifier, "tok")
    manager.resolve(Item(configuration="site1", identifier="/ok", state=ItemState.SUCCESS))
    manager.resolve(Item(configuration="site1", identifier="/bad", state=ItemState.ERROR, message="boom"))

    assert [i.identifier for i in manager.list_all()] == ["/new", "/busy", "/ok", "/bad"]
    assert [i.identifier for i in manager.list_pending()] == ["/new"]
    assert [i.identifier for i in manager.list_in_progress()] == ["/busy"]
    assert [i.identifier for i in manager.list_finished()] == ["/ok", "/bad"]
    assert [i.identifier for i in manager.list_successful()] == ["/ok"]
    assert [i.identifier for i in manager.list_failed()] == ["/bad"]
    assert manager.count_all() == 4
    assert manager.count_finished() == 2
    assert manager.count_by_state() == {
        "pending": 1,
        "in_progress": 1,
        "success": 1,
        "error": 1,
        "total": 4,
    }


def test_find_in_progress_by_token(manager):
    _claimed(manager, "/a", token="tok1")
    _claimed(manager, "/b", token="tok1")
    _claimed(manager, "/c", token="tok2")
    manager.resolve(Item(configuration="site1", identifier="/b", state=ItemState.SUCCESS))

    assert [i.identifier for i in manager.find_in_progress_by_token("tok1")] == ["/a"]
    assert [i.identifier for i in manager.find_in_progress_by_token("tok2")] == ["/c"]
    assert manager.find_in_progress_by_token("unknown") == []


def test_token_present_only_while_in_progress(manager):
    _enqueue(manager, "/a")
    _claimed(manager, "/b")
    _claimed(manager, "/c")
    manager.resolve(Item(configuration="site1", identifier="/c", state=ItemState.ERROR))

    for item in manager.list_all():
        assert bool(item.hash) == (item.state == ItemState.IN_PROGRESS)
        if item.state == ItemState.PENDING:
            assert item.message == ""


def test_persistence_across_managers(store, clock):
    QueueManager(store, clock=clock).enqueue(Item(configuration="site1", identifier="/a", data={"k": "v"}))

    item = QueueManager(store).get("site1", "/a")
    assert item.data == {"k": "v"}
