import pytest

from state import (
    ChatHistoryStore, ConversationStore, MediaKind, Mode, PendingMedia, RateLimiter, ValidationCache
)


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_conversation_defaults_to_idle():
    store = ConversationStore()
    assert store.mode(1) is Mode.IDLE
    assert store.get(1).pending is None


def test_entering_a_mode_replaces_the_previous_one():
    store = ConversationStore()
    store.enter(1, Mode.ACTIVE_CHAT)
    store.enter(1, Mode.AWAITING_IMAGE)
    assert store.mode(1) is Mode.AWAITING_IMAGE
    assert store.get(1).is_awaiting(MediaKind.IMAGE)
    assert not store.get(1).is_awaiting(MediaKind.PDF)

    store.await_description(1, PendingMedia(MediaKind.IMAGE, "https://files/photo.jpg"))
    assert store.mode(1) is Mode.AWAITING_DESCRIPTION
    assert store.get(1).pending.file_url == "https://files/photo.jpg"

    store.enter(1, Mode.IDLE)
    assert store.mode(1) is Mode.IDLE
    assert len(store) == 0


def test_chats_are_independent():
    store = ConversationStore()
    store.enter(1, Mode.ACTIVE_CHAT)
    store.enter(2, Mode.AWAITING_CREDENTIAL)
    assert store.mode(1) is Mode.ACTIVE_CHAT
    assert store.mode(2) is Mode.AWAITING_CREDENTIAL


def test_awaiting_description_needs_a_pending_file():
    with pytest.raises(ValueError):
        ConversationStore().enter(1, Mode.AWAITING_DESCRIPTION)


def test_history_drops_oldest_pairs():
    histories = ChatHistoryStore(max_turns=4)
    for i in range(3):
        histories.append(7, "user", f"q{i}")
        histories.append(7, "model", f"a{i}")

    turns = histories.turns(7)
    assert [t["parts"][0] for t in turns] == ["q1", "a1", "q2", "a2"]
    assert turns[0]["role"] == "user"


def test_history_turns_are_a_copy():
    histories = ChatHistoryStore()
    histories.append(7, "user", "hi")
    histories.turns(7).clear()
    assert len(histories.turns(7)) == 1
    histories.clear(7)
    assert histories.turns(7) == []


def test_rate_limiter_allows_five_per_window():
    clock = FakeClock()
    limiter = RateLimiter(max_requests=5, window=60, clock=clock)
    results = [limiter.is_limited(9) for _ in range(6)]
    assert results == [False] * 5 + [True]


def test_rate_limiter_window_resets_after_expiry():
    clock = FakeClock()
    limiter = RateLimiter(max_requests=5, window=60, clock=clock)
    for _ in range(6):
        limiter.is_limited(9)

    clock.now += 60
    assert limiter.is_limited(9)

    clock.now += 1
    assert not limiter.is_limited(9)
    assert limiter.count(9) == 1


def test_rate_limiter_is_per_user():
    limiter = RateLimiter(max_requests=1, window=60, clock=FakeClock())
    assert not limiter.is_limited(1)
    assert not limiter.is_limited(2)
    assert limiter.is_limited(1)


def test_validation_cache_expires():
    clock = FakeClock()
    cache = ValidationCache(ttl=600, clock=clock)
    assert cache.get("key") is None

    cache.set("key", False)
    clock.now += 599
    assert cache.get("key") is False

    clock.now += 1
    assert cache.get("key") is None


def test_rate_limiter_forgets_expired_users():
    clock = FakeClock()
    limiter = RateLimiter(max_requests=5, window=60, clock=clock)
    for user_id in range(10):
        limiter.is_limited(user_id)
    assert len(limiter) == 10

    clock.now += 61
    limiter.is_limited(99)
    assert len(limiter) == 1
    assert limiter.count(3) == 0


def test_validation_cache_drops_expired_entries_on_write():
    clock = FakeClock()
    cache = ValidationCache(ttl=600, clock=clock)
    for i in range(5):
        cache.set(f"key-{i}", True)
    assert len(cache) == 5

    clock.now += 600
    cache.set("fresh", False)
    assert len(cache) == 1
    assert cache.get("fresh") is False
