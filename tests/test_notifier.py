import queue

from meshcontrol.notifier import Notifier


def drain(q):
    items = []
    while True:
        try:
            items.append(q.get_nowait())
        except queue.Empty:
            return items


def test_notify_all_reaches_every_node():
    notifier = Notifier()
    first, second = queue.Queue(), queue.Queue()
    notifier.add_node("a", first)
    notifier.add_node("b", second)
    notifier.notify_all("update")
    assert drain(first) == ["update"]
    assert drain(second) == ["update"]


def test_notify_with_ignore_skips_listed_keys():
    notifier = Notifier()
    first, second, third = queue.Queue(), queue.Queue(), queue.Queue()
    notifier.add_node("a", first)
    notifier.add_node("b", second)
    notifier.add_node("c", third)
    notifier.notify_with_ignore("update", "a", "c")
    assert drain(first) == []
    assert drain(second) == ["update"]
    assert drain(third) == []


def test_removed_node_gets_nothing():
    notifier = Notifier()
    channel = queue.Queue()
    notifier.add_node("a", channel)
    notifier.remove_node("a")
    notifier.notify_all("update")
    assert drain(channel) == []


def test_removing_unknown_key_keeps_others():
    notifier = Notifier()
    channel = queue.Queue()
    notifier.remove_node("missing")
    notifier.add_node("a", channel)
    notifier.remove_node("missing")
    notifier.notify_all("update")
    assert drain(channel) == ["update"]


def test_adding_same_key_replaces_channel():
    notifier = Notifier()
    old, new = queue.Queue(), queue.Queue()
    notifier.add_node("a", old)
    notifier.add_node("a", new)
    notifier.notify_all("update")
    assert drain(old) == []
    assert drain(new) == ["update"]


def test_updates_arrive_in_order():
    notifier = Notifier()
    channel = queue.Queue()
    notifier.add_node("a", channel)
    updates = [f"u{i}" for i in range(5)]
    for update in updates:
        notifier.notify_all(update)
    assert drain(channel) == updates