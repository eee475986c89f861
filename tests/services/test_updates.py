from satellite_node.services.outcomes import Err, Ok
from satellite_node.services.updates import UpdateDispatcher, clear_cache


def test_each_record_gets_its_own_outcome(store):
    dispatcher = UpdateDispatcher(store)

    outcomes = dispatcher.dispatch([
        {"type": "config_update", "data": {"key": "metrics.interval", "value": 120}},
        {"type": "mystery_update", "data": {}},
        "not-a-record",
        {"type": "tenant_update", "data": {"id": "t-1"}},
        {"data": {}},
    ])

    assert [o.type for o in outcomes] == [
        "config_update", "mystery_update", "unknown", "tenant_update", "unknown",
    ]
    assert [o.ok for o in outcomes] == [True, False, False, True, False]
    assert isinstance(outcomes[0].outcome, Ok)
    assert isinstance(outcomes[1].outcome, Err)
    assert outcomes[1].outcome.reason == "unknown update type: mystery_update"
    assert dispatcher.config_override("metrics.interval") == 120


def test_failing_handler_does_not_abort_batch(store):
    dispatcher = UpdateDispatcher(store)

    def explode(data):
        raise ValueError("bad payload")

    dispatcher.register("user_update", explode)
    outcomes = dispatcher.dispatch([
        {"type": "user_update", "data": {"id": 1}},
        {"type": "config_update", "data": {"key": "a", "value": "b"}},
    ])

    assert outcomes[0].as_dict() == {"type": "user_update", "success": False, "error": "bad payload"}
    assert outcomes[1].ok


def test_config_update_requires_key_and_value(store):
    dispatcher = UpdateDispatcher(store)

    outcomes = dispatcher.dispatch([
        {"type": "config_update", "data": {"value": 1}},
        {"type": "config_update", "data": {"key": "x"}},
        {"type": "config_update", "data": ["x", 1]},
    ])

    assert not any(o.ok for o in outcomes)


def test_cache_clear_update_flushes_tags(store):
    store.set("sync:users", "1", tags=("sync",))
    store.set("keep", "1", tags=("other",))
    dispatcher = UpdateDispatcher(store)

    (outcome,) = dispatcher.dispatch([{"type": "cache_clear", "data": {"tags": ["sync"]}}])

    assert outcome.ok
    assert outcome.outcome.value == {"cleared": "tags", "tags": ["sync"], "removed": 1}
    assert store.get("sync:users") is None
    assert store.get("keep") == "1"


def test_registered_handler_is_matched_exactly(store):
    dispatcher = UpdateDispatcher(store)
    dispatcher.register("order_update", lambda data: {"order": data["id"]})

    outcomes = dispatcher.dispatch([
        {"type": "order_update", "data": {"id": 7}},
        {"type": "ORDER_UPDATE", "data": {"id": 8}},
    ])

    assert outcomes[0].as_dict() == {"type": "order_update", "success": True, "result": {"order": 7}}
    assert not outcomes[1].ok
    assert "order_update" in dispatcher.supported_types


def test_clear_cache_selectors(store):
    store.set("a", "1", tags=("satellite",))
    store.set("b", "2")
    store.set("c", "3")

    assert clear_cache(store)["tags"] == ["satellite", "sync", "hub"]
    assert store.get("a") is None

    assert clear_cache(store, keys=["b"])["removed"] == 1
    assert clear_cache(store, clear_all=True) == {"cleared": "all"}
    assert store.get("c") is None


def test_any_handler_error_is_isolated_to_its_record(store):
    dispatcher = UpdateDispatcher(store)

    def broken(data):
        return data.missing_attribute

    dispatcher.register("order_update", broken)
    outcomes = dispatcher.dispatch([
        {"type": "order_update", "data": {"id": 1}},
        {"type": "config_update", "data": {"key": "sync.batch", "value": 50}},
    ])

    assert not outcomes[0].ok
    assert "missing_attribute" in outcomes[0].outcome.reason
    assert outcomes[1].ok
    assert dispatcher.config_override("sync.batch") == 50
