import threading

from appstarter.models import CommandConfig
from appstarter.supervisor import SlotMap


def test_reserve_is_insert_if_absent():
    slots = SlotMap()
    command = CommandConfig(name="job")

    first = slots.reserve(command)

    assert first is not None
    assert first.command is command
    assert not first.is_spawned
    assert first.pid is None
    assert slots.reserve(command) is None
    assert command.id in slots
    assert len(slots) == 1


def test_only_one_concurrent_reserve_wins():
    slots = SlotMap()
    command = CommandConfig(name="job")
    barrier = threading.Barrier(8)
    winners = []
    lock = threading.Lock()

    def contend():
        barrier.wait()
        managed = slots.reserve(command)
        if managed is not None:
            with lock:
                winners.append(managed)

    threads = [threading.Thread(target=contend) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(winners) == 1
    assert slots.get(command.id) is winners[0]


def test_release_only_removes_the_expected_holder():
    slots = SlotMap()
    command = CommandConfig(name="job")
    old = slots.reserve(command)
    assert slots.release(command.id, old)

    new = slots.reserve(command)
    assert not slots.release(command.id, old)
    assert slots.get(command.id) is new


def test_drain_empties_the_map():
    slots = SlotMap()
    commands = [CommandConfig(name=f"job{i}") for i in range(3)]
    for command in commands:
        slots.reserve(command)

    drained = slots.drain()

    assert {m.command.id for m in drained} == {c.id for c in commands}
    assert len(slots) == 0
    assert slots.values() == []
