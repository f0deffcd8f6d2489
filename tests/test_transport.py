import json
import unittest
from unittest.mock import patch

import requests

from beacon.models.event import ClickEvent, PageViewEvent
from beacon.subscription import SubscriptionClient, SubscriptionError
from beacon.transport import HttpTransport, TransportError, post_json


class _MockResponse:
    def __init__(self, status_code=200, payload=None, text=''):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError('no json')
        return self._payload


def _batch():
    return [
        PageViewEvent(id='evt_1', timestamp=1000, session_id='sess_1', user_id='u1', payload={'page': '/'}),
        ClickEvent(id='evt_2', timestamp=1001, session_id='sess_1', payload={'linkType': 'internal'}),
    ]


class HttpTransportTestCase(unittest.TestCase):
    def test_send_posts_whole_batch_as_camel_case(self):
        transport = HttpTransport('http://bge.local/api/analytics/events', timeout=5.0, token='abc')
        with patch('beacon.transport.requests.post', return_value=_MockResponse(payload={'success': True})) as post_mock:
            result = transport.send(_batch())

        self.assertTrue(result['success'])
        self.assertEqual(post_mock.call_count, 1)
        args, kwargs = post_mock.call_args
        self.assertEqual(args[0], 'http://bge.local/api/analytics/events')
        self.assertEqual(kwargs['timeout'], 5.0)
        self.assertEqual(kwargs['headers']['Authorization'], 'Bearer abc')
        body = json.loads(kwargs['data'].decode('utf-8'))
        self.assertEqual([e['id'] for e in body['events']], ['evt_1', 'evt_2'])
        self.assertEqual(body['events'][0]['sessionId'], 'sess_1')
        self.assertEqual(body['events'][0]['type'], 'page_view')
        self.assertEqual(body['events'][1]['payload']['linkType'], 'internal')

    def test_non_2xx_is_failure(self):
        transport = HttpTransport('http://bge.local/events')
        with patch('beacon.transport.requests.post', return_value=_MockResponse(status_code=503, text='busy')):
            with self.assertRaises(TransportError) as ctx:
                transport.send(_batch())
        self.assertEqual(ctx.exception.status_code, 503)

    def test_success_false_is_failure(self):
        transport = HttpTransport('http://bge.local/events')
        with patch('beacon.transport.requests.post', return_value=_MockResponse(payload={'success': False, 'message': 'db down'})):
            with self.assertRaises(TransportError) as ctx:
                transport.send(_batch())
        self.assertIn('db down', str(ctx.exception))

    def test_timeout_and_network_errors_are_failures(self):
        transport = HttpTransport('http://bge.local/events', timeout=0.5)
        for error in (requests.exceptions.Timeout('slow'), requests.exceptions.ConnectionError('refused')):
            with self.subTest(error=type(error).__name__):
                with patch('beacon.transport.requests.post', side_effect=error):
                    with self.assertRaises(TransportError):
                        transport.send(_batch())

    def test_non_json_2xx_is_success(self):
        with patch('beacon.transport.requests.post', return_value=_MockResponse(status_code=204)):
            self.assertEqual(post_json('http://bge.local/events', {'events': []}), {})

    def test_beacon_does_not_block_and_swallows_failure(self):
        transport = HttpTransport('http://bge.local/events')
        started = []

        class _Thread:
            def __init__(self, target, args, daemon):
                self.target, self.args, self.daemon = target, args, daemon

            def start(self):
                started.append(self)

        with patch('beacon.transport.threading.Thread', _Thread):
            self.assertTrue(transport.beacon(_batch()))
        self.assertFalse(transport.beacon([]))

        self.assertEqual(len(started), 1)
        self.assertTrue(started[0].daemon)
        with patch('beacon.transport.requests.post', side_effect=requests.exceptions.ConnectionError('offline')):
            with self.assertLogs('beacon.transport', level='WARNING') as logs:
                started[0].target(*started[0].args)
        self.assertTrue(any('batch.beacon.fail' in line for line in logs.output))


class SubscriptionClientTestCase(unittest.TestCase):
    def setUp(self):
        self.client = SubscriptionClient('http://bge.local/subscribe', 'http://bge.local/validate', timeout=2.0)

    def test_register_sends_user_fields(self):
        sub = {'endpoint': 'https://push.example.com/1'}
        with patch('beacon.transport.requests.post', return_value=_MockResponse(payload={'success': True})) as post_mock:
            self.assertTrue(self.client.register(sub, 'u1', 'teacher'))
        body = json.loads(post_mock.call_args.kwargs['data'].decode('utf-8'))
        self.assertEqual(body, {'subscription': sub, 'userId': 'u1', 'userType': 'teacher'})
        self.assertEqual(post_mock.call_args.args[0], 'http://bge.local/subscribe')

    def test_register_rejection_raises(self):
        with patch('beacon.transport.requests.post', return_value=_MockResponse(payload={'success': False})):
            with self.assertRaises(SubscriptionError):
                self.client.register({'endpoint': 'x'}, 'u1')

    def test_validate_results(self):
        with patch('beacon.transport.requests.post', return_value=_MockResponse(payload={'success': True})):
            self.assertTrue(self.client.validate('x', 'u1'))
        with patch('beacon.transport.requests.post', return_value=_MockResponse(payload={'success': False})):
            self.assertFalse(self.client.validate('x', 'u1'))
        with patch('beacon.transport.requests.post', return_value=_MockResponse(status_code=410, text='gone')):
            self.assertFalse(self.client.validate('x', 'u1'))
        with patch('beacon.transport.requests.post', side_effect=requests.exceptions.ConnectionError('offline')):
            with self.assertRaises(SubscriptionError):
                self.client.validate('x', 'u1')


if __name__ == '__main__':
    unittest.main()
