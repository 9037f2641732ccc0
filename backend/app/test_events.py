from __future__ import annotations

from unittest import IsolatedAsyncioTestCase

from .events import EventStore


class EventStoreTests(IsolatedAsyncioTestCase):
    async def test_sequence_numbers_are_per_room(self):
        store = EventStore()

        self.assertEqual(await store.append("A", {"type": "tick"}), 1)
        self.assertEqual(await store.append("A", {"type": "tick"}), 2)
        self.assertEqual(await store.append("B", {"type": "tick"}), 1)

    async def test_list_after_sequence(self):
        store = EventStore()
        for n in range(4):
            await store.append("A", {"type": "tick", "n": n})

        events = await store.list("A", after=2)

        self.assertEqual([e["seq"] for e in events], [3, 4])
        self.assertEqual(events[0]["payload"], {"type": "tick", "n": 2})

    async def test_reset_clears_events_but_keeps_counting(self):
        store = EventStore()
        await store.append("A", {"type": "tick"})
        await store.append("B", {"type": "tick"})

        await store.reset("A")

        events = await store.list("A")
        self.assertEqual([(e["seq"], e["payload"]["type"]) for e in events], [(2, "room_reset")])
        self.assertEqual(len(await store.list("B")), 1)

    async def test_subscribers_receive_every_append(self):
        store = EventStore()
        queue = store.subscribe()

        seq = await store.append("A", {"type": "round_end"})

        self.assertEqual(queue.get_nowait(), ("A", seq, {"type": "round_end"}))

        store.unsubscribe(queue)
        await store.append("A", {"type": "tick"})
        self.assertTrue(queue.empty())
        store.unsubscribe(queue)
