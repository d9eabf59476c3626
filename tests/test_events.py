from sessiondeck.services.events import SESSION_CREATED, EventBus


def test_emit_reaches_all_listeners():
    bus = EventBus()
    a, b = [], []
    bus.subscribe(lambda name, data: a.append((name, data)))
    bus.subscribe(lambda name, data: b.append(name))

    bus.emit(SESSION_CREATED, {"id": "s1"})

    assert a == [(SESSION_CREATED, {"id": "s1"})]
    assert b == [SESSION_CREATED]


def test_unsubscribe():
    bus = EventBus()
    seen = []
    unsubscribe = bus.subscribe(lambda name, data: seen.append(name))
    unsubscribe()
    unsubscribe()

    bus.emit(SESSION_CREATED, {})

    assert seen == []


def test_failing_listener_does_not_block_others():
    bus = EventBus()
    seen = []

    def broken(name, data):
        raise RuntimeError("boom")

    bus.subscribe(broken)
    bus.subscribe(lambda name, data: seen.append(name))

    bus.emit(SESSION_CREATED, {})

    assert seen == [SESSION_CREATED]
