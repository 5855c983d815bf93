from voice_relay.services.voice_session import MAX_HISTORY, SessionRegistry


class StubHandle:
    def __init__(self, *, fail: bool = False):
        self.stop_calls = 0
        self._fail = fail

    def stop(self):
        self.stop_calls += 1
        if self._fail:
            raise RuntimeError("already gone")


def test_create_and_delete_session():
    registry = SessionRegistry()

    session = registry.create("conn-1")

    assert registry.get("conn-1") is session
    assert not session.active
    assert session.history == []
    assert len(registry) == 1

    registry.delete("conn-1")
    registry.delete("conn-1")

    assert registry.get("conn-1") is None
    assert len(registry) == 0


def test_history_is_capped_with_oldest_evicted_first():
    registry = SessionRegistry()
    session = registry.create("conn-1")

    for index in range(MAX_HISTORY + 3):
        role = "user" if index % 2 == 0 else "assistant"
        registry.append_history(session, role, f"message {index}")

    assert MAX_HISTORY == 12
    assert len(session.history) == MAX_HISTORY
    assert session.history[0] == {"role": "assistant", "content": "message 3"}
    assert session.history[-1] == {"role": "user", "content": "message 14"}


def test_set_handle_stops_previous_handle():
    registry = SessionRegistry()
    first, second = StubHandle(), StubHandle()

    registry.set_handle("conn-1", first)
    registry.set_handle("conn-1", second)

    assert first.stop_calls == 1
    assert second.stop_calls == 0
    assert registry.get_handle("conn-1") is second


def test_clear_handle_ignores_stale_handle():
    registry = SessionRegistry()
    stale, current = StubHandle(), StubHandle()
    registry.set_handle("conn-1", current)

    registry.clear_handle("conn-1", stale)
    assert registry.get_handle("conn-1") is current

    registry.clear_handle("conn-1", current)
    assert registry.get_handle("conn-1") is None


def test_stop_handle_without_handle_is_a_no_op():
    registry = SessionRegistry()

    assert registry.stop_handle("conn-1") is False
    assert registry.stop_handle("conn-1") is False


def test_stop_handle_swallows_stop_errors():
    registry = SessionRegistry()
    handle = StubHandle(fail=True)
    registry.set_handle("conn-1", handle)

    assert registry.stop_handle("conn-1") is True
    assert handle.stop_calls == 1
    assert registry.get_handle("conn-1") is None


def test_stop_all_stops_every_handle():
    registry = SessionRegistry()
    handles = [StubHandle() for _ in range(3)]
    for index, handle in enumerate(handles):
        registry.set_handle(f"conn-{index}", handle)

    registry.stop_all()

    assert [handle.stop_calls for handle in handles] == [1, 1, 1]
    assert registry.get_handle("conn-0") is None
