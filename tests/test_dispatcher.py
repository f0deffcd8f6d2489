import unittest

from beacon.buffer import EventBuffer
from beacon.collector import EventCollector
from beacon.dispatcher import BatchDispatcher, DispatchState
from beacon.platform import ManualScheduler, MemoryStorage
from beacon.session import SessionTracker
from beacon.status import STATUS_DELIVERY, StatusBoard
from beacon.transport import Transport, TransportError
from beacon.models.event import PageViewEvent


class _FakeTransport(Transport):
    """前 failures 次 send 失败，之后成功；记录每次调用的批次。"""

    def __init__(self, failures=0):
        self.failures = failures
        self.calls = []
        self.beacons = []

    def send(self, batch):
        self.calls.append([r.id for r in batch])
        if len(self.calls) <= self.failures:
            raise TransportError('HTTP 503: unavailable', status_code=503)
        return {'success': True}

    def beacon(self, batch):
        self.beacons.append([r.id for r in batch])
        return True


def _record(i):
    return PageViewEvent(id=f'evt_{i}', timestamp=1_700_000_000_000 + i, session_id='sess_1')


class BatchDispatcherTestCase(unittest.TestCase):
    def setUp(self):
        self.scheduler = ManualScheduler()
        self.buffer = EventBuffer(max_size=100)
        self.status = StatusBoard(self.scheduler)

    def _dispatcher(self, transport, **kwargs):
        kwargs.setdefault('interval', 30.0)
        kwargs.setdefault('retry_attempts', 3)
        kwargs.setdefault('backoff_base', 1.0)
        return BatchDispatcher(self.buffer, transport, self.scheduler, status=self.status, **kwargs)

    def _fill(self, count):
        for i in range(count):
            self.buffer.push(_record(i))

    def test_retry_until_success_delivers_batch_intact(self):
        for failures in range(0, 4):
            with self.subTest(failures=failures):
                self.setUp()
                transport = _FakeTransport(failures=failures)
                dispatcher = self._dispatcher(transport)
                self._fill(5)

                dispatcher.tick()
                self.scheduler.advance(60)

                expected = [f'evt_{i}' for i in range(5)]
                self.assertEqual(len(transport.calls), failures + 1)
                self.assertTrue(all(call == expected for call in transport.calls))
                self.assertEqual(dispatcher.stats.sent_batches, 1)
                self.assertEqual(dispatcher.stats.sent_events, 5)
                self.assertEqual(dispatcher.stats.dropped_batches, 0)
                self.assertEqual(len(self.buffer), 0)
                self.assertEqual(dispatcher.state, DispatchState.IDLE)

    def test_backoff_delays_double(self):
        transport = _FakeTransport(failures=3)
        dispatcher = self._dispatcher(transport, backoff_base=1.0)
        self._fill(2)

        dispatcher.tick()
        self.scheduler.advance(60)

        self.assertEqual(self.scheduler.scheduled, [1.0, 2.0, 4.0])

    def test_exhausted_retries_drop_batch_once(self):
        transport = _FakeTransport(failures=100)
        dispatcher = self._dispatcher(transport, retry_attempts=3)
        self._fill(4)

        with self.assertLogs('beacon.dispatcher', level='ERROR') as logs:
            dispatcher.tick()
            self.scheduler.advance(120)

        drop_lines = [line for line in logs.output if 'event=batch.drop' in line]
        self.assertEqual(len(drop_lines), 1)
        self.assertEqual(len(transport.calls), 4)
        self.assertEqual(dispatcher.stats.dropped_batches, 1)
        self.assertEqual(dispatcher.stats.dropped_events, 4)
        self.assertEqual(len(self.buffer), 0)
        self.assertEqual(dispatcher.state, DispatchState.IDLE)
        self.assertIsNotNone(self.status.get(STATUS_DELIVERY))

    def test_failed_batch_stays_at_front_during_backoff(self):
        transport = _FakeTransport(failures=1)
        dispatcher = self._dispatcher(transport)
        self._fill(3)

        dispatcher.tick()
        self.scheduler.run_pending()
        self.buffer.push(_record(99))

        self.assertEqual(dispatcher.state, DispatchState.BACKOFF)
        self.assertEqual([r.id for r in self.buffer.snapshot()], ['evt_0', 'evt_1', 'evt_2', 'evt_99'])
        self.assertEqual(dispatcher.tick(), [])

        self.scheduler.advance(1.0)
        self.assertEqual(transport.calls[-1], ['evt_0', 'evt_1', 'evt_2'])
        self.assertEqual(dispatcher.state, DispatchState.IDLE)
        self.assertEqual([r.id for r in self.buffer.snapshot()], ['evt_99'])

    def test_events_pushed_during_backoff_get_their_own_attempts(self):
        self.buffer = EventBuffer(max_size=5)
        transport = _FakeTransport(failures=2)
        dispatcher = self._dispatcher(transport, retry_attempts=1)
        self._fill(5)

        dispatcher.tick()
        self.scheduler.run_pending()
        for i in range(10, 15):
            self.buffer.push(_record(i))
        self.scheduler.advance(10)

        old = [f'evt_{i}' for i in range(5)]
        new = [f'evt_{i}' for i in range(10, 15)]
        self.assertEqual(transport.calls, [old, new, new])
        self.assertEqual(dispatcher.stats.dropped_events, 0)
        self.assertEqual(dispatcher.stats.sent_events, 5)
        self.assertEqual(dispatcher.state, DispatchState.IDLE)

    def test_retry_resends_only_surviving_records_of_failed_batch(self):
        self.buffer = EventBuffer(max_size=5)
        transport = _FakeTransport(failures=1)
        dispatcher = self._dispatcher(transport)
        self._fill(3)

        dispatcher.tick()
        self.scheduler.run_pending()
        for i in range(10, 14):
            self.buffer.push(_record(i))
        self.scheduler.advance(1.0)

        self.assertEqual(transport.calls[-1], ['evt_2'])
        self.assertEqual([r.id for r in self.buffer.snapshot()], ['evt_10', 'evt_11', 'evt_12', 'evt_13'])
        self.assertEqual(dispatcher.state, DispatchState.IDLE)

    def test_shutdown_hands_queued_batch_to_beacon(self):
        transport = _FakeTransport(failures=1)
        dispatcher = self._dispatcher(transport)
        self._fill(3)

        dispatcher.tick()
        handed = dispatcher.shutdown()
        self.scheduler.advance(60)

        self.assertEqual(handed, 3)
        self.assertEqual(transport.calls, [])
        self.assertEqual(transport.beacons, [['evt_0', 'evt_1', 'evt_2']])
        self.assertEqual(self.scheduler.pending(), 0)

    def test_send_failing_after_shutdown_is_not_retried(self):
        transport = _FakeTransport(failures=1)
        dispatcher = self._dispatcher(transport, batch_size=3)
        self._fill(5)
        real_send = transport.send

        def send_then_unload(batch):
            dispatcher.shutdown()
            return real_send(batch)

        transport.send = send_then_unload
        dispatcher.tick()
        self.scheduler.advance(60)

        self.assertEqual(len(transport.calls), 1)
        self.assertEqual(transport.beacons, [['evt_3', 'evt_4'], ['evt_0', 'evt_1', 'evt_2']])
        self.assertEqual(dispatcher.stats.beacon_events, 5)
        self.assertEqual(dispatcher.stats.dropped_events, 0)
        self.assertEqual(dispatcher.state, DispatchState.IDLE)
        self.assertEqual(self.scheduler.pending(), 0)
        self.assertEqual(dispatcher.tick(), [])

    def test_tick_on_empty_buffer_sends_nothing(self):
        transport = _FakeTransport()
        dispatcher = self._dispatcher(transport)
        self.assertEqual(dispatcher.tick(), [])
        self.scheduler.run_pending()
        self.assertEqual(transport.calls, [])

    def test_tick_never_blocks_caller(self):
        transport = _FakeTransport()
        dispatcher = self._dispatcher(transport)
        self._fill(3)

        batch = dispatcher.tick()

        self.assertEqual(len(batch), 3)
        self.assertEqual(transport.calls, [])
        self.assertEqual(dispatcher.state, DispatchState.SENDING)
        self.scheduler.run_pending()
        self.assertEqual(len(transport.calls), 1)

    def test_end_to_end_three_events_one_tick(self):
        transport = _FakeTransport()
        dispatcher = self._dispatcher(transport, interval=30.0)
        session = SessionTracker(MemoryStorage(), self.scheduler)
        collector = EventCollector(session, self.scheduler)
        raws = [
            {'type': 'click', 'target': {'tagName': 'BUTTON', 'id': 'menu'}},
            {'type': 'scroll_depth', 'percent': 50},
            {'type': 'page_view', 'page': '/egresados'},
        ]
        records = [collector.on_event(raw) for raw in raws]
        for record in records:
            self.buffer.push(record)

        dispatcher.start()
        self.scheduler.advance(30.0)

        self.assertEqual(len(transport.calls), 1)
        self.assertEqual(transport.calls[0], [r.id for r in records])
        self.assertEqual(len(self.buffer), 0)

    def test_direct_tick_returns_events_in_capture_order(self):
        dispatcher = self._dispatcher(_FakeTransport())
        session = SessionTracker(MemoryStorage(), self.scheduler)
        collector = EventCollector(session, self.scheduler)
        for raw in ({'type': 'click'}, {'type': 'scroll_depth', 'percent': 10}, {'type': 'page_view'}):
            self.buffer.push(collector.on_event(raw))

        batch = dispatcher.tick()

        self.assertEqual([r.type for r in batch], ['click', 'scroll_depth', 'page_view'])
        self.assertEqual(len(self.buffer), 0)

    def test_interval_timer_reschedules_and_stops(self):
        dispatcher = self._dispatcher(_FakeTransport(), interval=30.0)
        dispatcher.start()
        self.scheduler.advance(90.0)
        self.assertEqual(self.scheduler.scheduled, [30.0, 30.0, 30.0, 30.0])

        dispatcher.stop()
        self.assertEqual(self.scheduler.pending(), 0)

    def test_notify_full_triggers_send(self):
        transport = _FakeTransport()
        dispatcher = self._dispatcher(transport)
        self._fill(100)

        dispatcher.notify_full()
        self.scheduler.run_pending()

        self.assertEqual(len(transport.calls), 1)
        self.assertEqual(len(transport.calls[0]), 100)

    def test_shutdown_flushes_through_beacon(self):
        transport = _FakeTransport(failures=1)
        dispatcher = self._dispatcher(transport, batch_size=2)
        self._fill(5)
        dispatcher.start()
        dispatcher.tick()
        self.scheduler.run_pending()

        handed = dispatcher.shutdown()

        self.assertEqual(handed, 5)
        self.assertEqual(transport.beacons, [['evt_0', 'evt_1'], ['evt_2', 'evt_3'], ['evt_4']])
        self.assertEqual(self.scheduler.pending(), 0)
        self.assertEqual(len(self.buffer), 0)


if __name__ == '__main__':
    unittest.main()
