"""
Tests for the token-budgeted conversation window.
Run with: pytest tests/test_window.py
"""

import random

from chatservice.models import MessageRole
from chatservice.window import ConversationWindow


def words(n: int) -> str:
    return " ".join(["w"] * n)


# ---------------------------------------------------------------------------
# Admission and eviction
# ---------------------------------------------------------------------------

def test_append_within_budget(make_message):
    """Messages that fit are appended without eviction."""
    window = ConversationWindow(max_tokens=10)
    assert window.append(make_message(words(4))) == []
    assert window.append(make_message(words(6))) == []
    assert window.active_count() == 2
    assert window.token_usage == 10
    assert window.erased_messages() == ()


def test_fifo_eviction_order(make_message):
    """Evicting two messages moves m1 then m2 to erased; m3 stays with the new one."""
    window = ConversationWindow(max_tokens=9)
    m1, m2, m3 = make_message(words(3)), make_message(words(3)), make_message(words(3))
    for m in (m1, m2, m3):
        window.append(m)

    new = make_message(words(5))
    evicted = window.append(new)

    assert evicted == [m1, m2]
    assert window.erased_messages() == (m1, m2)
    assert window.active_messages() == (m3, new)
    assert window.token_usage == 8


def test_oversized_message_admitted_when_window_empties(make_message):
    """A message larger than the whole budget is accepted, not rejected or looped on."""
    window = ConversationWindow(max_tokens=5)
    a, b = make_message(words(2)), make_message(words(2))
    window.append(a)
    window.append(b)

    huge = make_message(words(50))
    evicted = window.append(huge)

    assert evicted == [a, b]
    assert window.active_messages() == (huge,)
    assert window.token_usage == 50


def test_oversized_message_into_empty_window(make_message):
    window = ConversationWindow(max_tokens=1)
    window.append(make_message(words(3)))
    assert window.active_count() == 1
    assert window.erased_messages() == ()


def test_exact_fit_does_not_evict(make_message):
    """Budget test is max < incoming + usage; equality fits."""
    window = ConversationWindow(max_tokens=6)
    window.append(make_message(words(3)))
    assert window.append(make_message(words(3))) == []
    assert window.token_usage == 6


# ---------------------------------------------------------------------------
# Pinned system message
# ---------------------------------------------------------------------------

def test_pinned_message_is_never_evicted(make_message):
    system = make_message(words(2), MessageRole.SYSTEM)
    window = ConversationWindow(max_tokens=8, pinned=system)
    window.append(system)
    u1, u2 = make_message(words(3)), make_message(words(3))
    window.append(u1)
    window.append(u2)

    new = make_message(words(4))
    evicted = window.append(new)

    assert evicted == [u1, u2]
    assert window.active_messages() == (system, new)
    assert window.token_usage == 6


def test_pinned_message_admits_oversized_after_others_evicted(make_message):
    """Only the pinned message left: the incoming one is admitted over budget."""
    system = make_message(words(2), MessageRole.SYSTEM)
    window = ConversationWindow(max_tokens=5, pinned=system)
    window.append(system)
    window.append(make_message(words(3)))

    big = make_message(words(10))
    window.append(big)

    assert window.active_messages() == (system, big)
    assert window.token_usage == 12


def test_unpinned_system_message_is_evicted_first(make_message):
    system = make_message(words(2), MessageRole.SYSTEM)
    window = ConversationWindow(max_tokens=5)
    window.append(system)
    u1 = make_message(words(3))
    window.append(u1)

    evicted = window.append(make_message(words(2)))

    assert evicted == [system]
    assert window.active_messages()[0] == u1


# ---------------------------------------------------------------------------
# Invariants over arbitrary sequences
# ---------------------------------------------------------------------------

def test_budget_and_usage_invariants_hold_for_random_sequences(make_message):
    """
    After each append: usage <= max or only one non-pinned message is active,
    and usage always equals a from-scratch recount.
    """
    rng = random.Random(1234)
    for pinned in (False, True):
        system = make_message(words(3), MessageRole.SYSTEM)
        window = ConversationWindow(max_tokens=30, pinned=system if pinned else None)
        window.append(system)
        for _ in range(200):
            window.append(make_message(words(rng.randint(1, 40))))

            active = window.active_messages()
            unpinned = [m for m in active if not (pinned and m.id == system.id)]
            assert window.token_usage <= 30 or len(unpinned) == 1
            assert window.token_usage == sum(m.token_count for m in active)
            assert window.recompute_usage() == window.token_usage
            if pinned:
                assert active[0] == system

        # Nothing is lost: every message is active or erased
        assert len(active) + len(window.erased_messages()) == 201


def test_active_messages_is_a_snapshot(make_message):
    window = ConversationWindow(max_tokens=10)
    window.append(make_message("one"))
    snapshot = window.active_messages()
    window.append(make_message("two"))
    assert len(snapshot) == 1
    assert list(window.active_messages()) == list(window.active_messages())
