import unittest

from beacon.buffer import EventBuffer
from beacon.models.event import PageViewEvent


def _record(i):
    return PageViewEvent(id=f'evt_{i}', timestamp=1_700_000_000_000 + i, session_id='sess_1')


class EventBufferTestCase(unittest.TestCase):
    def test_overflow_keeps_newest_events(self):
        buffer = EventBuffer(max_size=100)
        evicted = []
        for i in range(150):
            evicted.extend(buffer.push(_record(i)))

        self.assertEqual(len(buffer), 100)
        self.assertEqual([r.id for r in evicted], [f'evt_{i}' for i in range(50)])
        self.assertEqual([r.id for r in buffer.snapshot()], [f'evt_{i}' for i in range(50, 150)])
        self.assertEqual(buffer.evicted_total, 50)

    def test_drain_returns_oldest_first_and_empty_when_empty(self):
        buffer = EventBuffer(max_size=10)
        for i in range(5):
            buffer.push(_record(i))

        batch = buffer.drain(3)
        self.assertEqual([r.id for r in batch], ['evt_0', 'evt_1', 'evt_2'])
        self.assertEqual(len(buffer), 2)
        self.assertEqual(len(buffer.drain(10)), 2)
        self.assertEqual(buffer.drain(10), [])

    def test_requeue_restores_order_at_front(self):
        buffer = EventBuffer(max_size=10)
        for i in range(5):
            buffer.push(_record(i))

        first = buffer.drain(3)
        buffer.push(_record(5))
        buffer.requeue(first)

        again = buffer.drain(3)
        self.assertEqual([r.id for r in again], [r.id for r in first])
        self.assertEqual([r.id for r in buffer.snapshot()], ['evt_3', 'evt_4', 'evt_5'])

    def test_requeue_over_capacity_evicts_oldest(self):
        buffer = EventBuffer(max_size=3)
        for i in range(3):
            buffer.push(_record(i))
        batch = buffer.drain(2)
        buffer.push(_record(3))
        buffer.push(_record(4))

        evicted = buffer.requeue(batch)

        self.assertEqual([r.id for r in evicted], ['evt_0', 'evt_1'])
        self.assertEqual([r.id for r in buffer.snapshot()], ['evt_2', 'evt_3', 'evt_4'])

    def test_is_full_and_clear(self):
        buffer = EventBuffer(max_size=2)
        buffer.push(_record(0))
        self.assertFalse(buffer.is_full)
        buffer.push(_record(1))
        self.assertTrue(buffer.is_full)
        self.assertEqual(buffer.clear(), 2)
        self.assertEqual(len(buffer), 0)

    def test_invalid_max_size(self):
        with self.assertRaises(ValueError):
            EventBuffer(max_size=0)


if __name__ == '__main__':
    unittest.main()
