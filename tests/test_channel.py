"""Channel tests — sequence counter and delivery cursors."""

from chatcast.broadcast.channel import Channel, ChannelPolicy


def test_next_sequence_is_monotonic():
    ch = Channel("everyone")
    assert [ch.next_sequence() for _ in range(5)] == [1, 2, 3, 4, 5]
    assert ch.last_sequence == 5


def test_sequences_are_per_channel():
    a = Channel("everyone")
    b = Channel("public.lobby")
    a.next_sequence()
    a.next_sequence()

    assert b.next_sequence() == 1


def test_is_empty_tracks_members():
    ch = Channel("user.7", ChannelPolicy.RESTRICTED)
    assert ch.is_empty()

    ch.add("c1")
    assert not ch.is_empty()

    ch.discard("c1")
    assert ch.is_empty()


def test_new_member_starts_at_current_position():
    ch = Channel("everyone")
    ch.next_sequence()
    ch.next_sequence()
    ch.add("late")

    assert ch.lag("late") == 0
    ch.next_sequence()
    assert ch.lag("late") == 1


def test_record_delivery_never_moves_backwards():
    ch = Channel("everyone")
    ch.add("c1")
    for _ in range(3):
        ch.next_sequence()

    ch.record_delivery("c1", 3)
    ch.record_delivery("c1", 2)

    assert ch.cursors["c1"] == 3
    assert ch.lag("c1") == 0


def test_discard_forgets_cursor():
    ch = Channel("everyone")
    ch.add("c1")
    ch.next_sequence()
    ch.record_delivery("c1", 1)
    ch.discard("c1")

    assert "c1" not in ch.cursors


def test_idle_for_uses_clock(clock):
    ch = Channel("everyone", clock=clock)
    clock.advance(12)
    assert ch.idle_for() == 12

    ch.next_sequence()
    assert ch.idle_for() == 0
