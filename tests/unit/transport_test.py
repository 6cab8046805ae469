from io import BytesIO
from mockito import unstub, verify, when
from typing import List, Optional, Tuple
import threading
from unittest import TestCase

import requests
from requests.structures import CaseInsensitiveDict
from urllib3.exceptions import ProtocolError

from cachedfetch.cache import HttpAwareCache, MemoryCache
from cachedfetch.errors import Cancelled
from cachedfetch.model import CacheEntry, Request, Response
from cachedfetch.transport import Transport, TransportDelegate


URL = 'http://api.example.test/items'


def make_response(status: int = 200, body: bytes = b'{"id": 1}', headers: Optional[dict] = None,
                  raw: Optional[BytesIO] = None) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response.reason = 'OK'
    response.headers = CaseInsensitiveDict(headers if headers is not None else {'Cache-Control': 'max-age=60'})
    response.raw = raw if raw is not None else BytesIO(body)
    response.url = URL
    return response


class BrokenBody(BytesIO):
    def read(self, size=-1):
        raise ProtocolError('Connection broken')


class RecordingDelegate(TransportDelegate):
    def __init__(self, approve: bool = True) -> None:
        self.approve = approve
        self.events: List[Tuple[str, object]] = []
        self.finished = threading.Event()

    def did_receive_response(self, response: Response) -> None:
        self.events.append(('response', response.status))

    def did_receive_data(self, chunk: bytes) -> None:
        self.events.append(('data', chunk))

    def will_cache_response(self, proposed: CacheEntry) -> Optional[CacheEntry]:
        self.events.append(('will_cache', proposed.response.body))
        return proposed if self.approve else None

    def did_complete(self, response: Optional[Response], error: Optional[BaseException]) -> None:
        self.events.append(('complete', error))

    def did_finish(self) -> None:
        self.events.append(('finish', None))
        self.finished.set()

    def body(self) -> bytes:
        return b''.join(value for name, value in self.events if name == 'data')

    def names(self) -> List[str]:
        return [name for name, value in self.events]


class TestTransport(TestCase):
    def setUp(self):
        self.store = MemoryCache()
        self.transport = Transport(cache=HttpAwareCache(self.store), chunk_size=4)
        self.request = Request(method='GET', uri=URL, headers={'Accept': 'application/json'})

    def tearDown(self):
        self.transport.close()
        unstub()

    def run_exchange(self, delegate: TransportDelegate, request: Optional[Request] = None) -> None:
        task = self.transport.start(request or self.request, delegate)
        task.wait(timeout=5)

    def test_streams_the_body_and_proposes_it_for_caching(self):
        when(self.transport.adapter)._send_upstream(...).thenAnswer(lambda *args, **kw: make_response())
        delegate = RecordingDelegate()

        self.run_exchange(delegate)

        self.assertEqual(b'{"id": 1}', delegate.body())
        self.assertEqual('response', delegate.names()[0])
        self.assertEqual(['will_cache', 'complete', 'finish'], delegate.names()[-3:])
        self.assertIn(('will_cache', b'{"id": 1}'), delegate.events)
        self.assertIn(('complete', None), delegate.events)

    def test_approved_responses_are_served_from_the_transport_cache(self):
        when(self.transport.adapter)._send_upstream(...).thenAnswer(lambda *args, **kw: make_response())

        self.run_exchange(RecordingDelegate())
        second = RecordingDelegate()
        self.run_exchange(second)

        verify(self.transport.adapter, times=1)._send_upstream(...)
        self.assertEqual(b'{"id": 1}', second.body())
        self.assertNotIn('will_cache', second.names())
        self.assertEqual(1, len(self.store))

    def test_suppressed_responses_are_not_cached(self):
        when(self.transport.adapter)._send_upstream(...).thenAnswer(lambda *args, **kw: make_response())

        self.run_exchange(RecordingDelegate(approve=False))
        self.run_exchange(RecordingDelegate(approve=False))

        verify(self.transport.adapter, times=2)._send_upstream(...)
        self.assertEqual(0, len(self.store))

    def test_error_responses_are_proposed_but_not_committed(self):
        when(self.transport.adapter)._send_upstream(...).thenAnswer(lambda *args, **kw: make_response(status=500))
        delegate = RecordingDelegate()

        self.run_exchange(delegate)

        self.assertIn('will_cache', delegate.names())
        self.assertEqual(0, len(self.store))

    def test_connection_errors_complete_with_the_error(self):
        error = requests.ConnectionError('connection refused')
        when(self.transport.adapter)._send_upstream(...).thenRaise(error)
        delegate = RecordingDelegate()

        self.run_exchange(delegate)

        self.assertEqual([('complete', error), ('finish', None)], delegate.events)

    def test_cancelled_task_still_completes_and_finishes(self):
        release = threading.Event()

        class CancellingDelegate(RecordingDelegate):
            def did_receive_data(self, chunk: bytes) -> None:
                super().did_receive_data(chunk)
                release.wait(timeout=5)

        when(self.transport.adapter)._send_upstream(...).thenAnswer(lambda *args, **kw: make_response())
        delegate = CancellingDelegate()

        task = self.transport.start(self.request, delegate)
        task.cancel()
        release.set()
        task.wait(timeout=5)

        self.assertTrue(delegate.finished.is_set())
        completions = [value for name, value in delegate.events if name == 'complete']
        self.assertEqual(1, len(completions))
        self.assertIsInstance(completions[0], Cancelled)
        self.assertNotIn('will_cache', delegate.names())

    def test_cancelled_while_sending_with_an_empty_body(self):
        sent = threading.Event()
        release = threading.Event()

        def answer(*args, **kw):
            sent.set()
            release.wait(timeout=5)
            return make_response(body=b'')

        when(self.transport.adapter)._send_upstream(...).thenAnswer(answer)
        delegate = RecordingDelegate()

        task = self.transport.start(self.request, delegate)
        sent.wait(timeout=5)
        task.cancel()
        release.set()
        task.wait(timeout=5)

        completions = [value for name, value in delegate.events if name == 'complete']
        self.assertEqual(1, len(completions))
        self.assertIsInstance(completions[0], Cancelled)
        self.assertEqual('finish', delegate.names()[-1])

    def test_broken_body_completes_with_the_error(self):
        when(self.transport.adapter)._send_upstream(...).thenAnswer(
            lambda *args, **kw: make_response(raw=BrokenBody()))
        delegate = RecordingDelegate()

        self.run_exchange(delegate)

        completions = [value for name, value in delegate.events if name == 'complete']
        self.assertEqual(1, len(completions))
        self.assertIsInstance(completions[0], ProtocolError)
        self.assertNotIn('will_cache', delegate.names())
        self.assertEqual(['response', 'complete', 'finish'], delegate.names())

    def test_unpreparable_url_completes_with_the_error(self):
        when(self.transport.adapter)._send_upstream(...).thenAnswer(lambda *args, **kw: make_response())
        delegate = RecordingDelegate()

        self.run_exchange(delegate, Request(method='GET', uri='/items'))

        self.assertEqual(['complete', 'finish'], delegate.names())
        self.assertIsInstance(delegate.events[0][1], requests.exceptions.MissingSchema)
        verify(self.transport.adapter, times=0)._send_upstream(...)
