from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from ddt import ddt, data
from io import BytesIO
import math
from mockito import unstub, verify, when
from typing import List, Optional
from unittest import TestCase

import requests
from requests.structures import CaseInsensitiveDict
from urllib3.exceptions import ProtocolError

from cachedfetch.cache import MemoryCache, max_age
from cachedfetch.client import FetchClient
from cachedfetch.config import ClientConfiguration
from cachedfetch.errors import CacheExpired, CacheMiss, DecodingError, HTTPError, TransportError
from cachedfetch.model import CacheEntry, CacheMode, Request, Resource, Response
from cachedfetch.orchestrator import State
from cachedfetch.result import Failure, Success
from cachedfetch.transport import Transport, TransportDelegate, TransportTask


@dataclass
class Item:
    id: int
    price: float


class ScriptedTransport:
    """
    Plays back a canned exchange synchronously, the way a transport with its own cache would.
    """

    def __init__(self, status: int = 200, chunks: List[bytes] = (b'{"id": 1, ', b'"price": 9.5}'),
                 propose_before_completion: bool = True) -> None:
        self.status = status
        self.chunks = list(chunks)
        self.propose_before_completion = propose_before_completion
        self.requests: List[Request] = []
        self.committed: List[Optional[CacheEntry]] = []

    def start(self, request: Request, delegate: TransportDelegate) -> TransportTask:
        self.requests.append(request)
        response = Response(status=self.status, reason='OK', headers={'Content-Type': 'application/json'},
                            url=request.uri)
        proposed = CacheEntry(request, Response(status=self.status, reason='OK', headers=response.headers,
                                                body=b''.join(self.chunks), url=request.uri),
                              datetime.now(timezone.utc))

        delegate.did_receive_response(response)
        for chunk in self.chunks:
            delegate.did_receive_data(chunk)
        if self.propose_before_completion:
            self.committed.append(delegate.will_cache_response(proposed))
        delegate.did_complete(response, None)
        if not self.propose_before_completion:
            self.committed.append(delegate.will_cache_response(proposed))
        delegate.did_finish()
        return TransportTask(delegate)

    def close(self) -> None:
        pass


def always(timestamp: datetime) -> bool:
    return True


def never(timestamp: datetime) -> bool:
    return False


@ddt
class TestFetchClient(TestCase):
    def setUp(self):
        self.transport = ScriptedTransport()
        self.cache = MemoryCache()
        self.configuration = ClientConfiguration(base_url='https://api.example.com')
        self.client = FetchClient(self.configuration, cache=self.cache, transport=self.transport)
        self.resource = Resource(path='/items/1', response_type=Item)

    def tearDown(self):
        self.client.close()

    def test_fetch_builds_the_request_and_decodes_the_response(self):
        delivered = []
        resource = Resource(path='/items', query={'q': 'hello world'}, response_type=Item)

        fetch = self.client.fetch(resource, completion=delivered.append)

        self.assertEqual('https://api.example.com/items?q=hello%20world', self.transport.requests[0].uri)
        self.assertEqual(Success(Item(id=1, price=9.5)), fetch.result(timeout=1))
        self.assertEqual([Success(Item(id=1, price=9.5))], delivered)
        self.assertIs(State.DONE, fetch.state)

    def test_fetch_surfaces_http_errors(self):
        self.transport.status = 404

        result = self.client.fetch(self.resource).result(timeout=1)

        self.assertIsInstance(result.error, HTTPError)
        self.assertEqual(404, result.error.status)

    def test_policy_leaves_caching_to_the_transport(self):
        fetch = self.client.fetch(self.resource, CacheMode.POLICY)
        fetch.result(timeout=1)

        self.assertIsNotNone(self.transport.committed[0])
        self.assertIsInstance(self.client.cached(self.resource, always).error, CacheMiss)

    @data(True, False)
    def test_manual_round_trip(self, propose_before_completion):
        self.transport.propose_before_completion = propose_before_completion

        fetched = self.client.fetch(self.resource, CacheMode.MANUAL).result(timeout=1)
        cached = self.client.cached(self.resource, always)

        self.assertEqual([None], self.transport.committed, 'The transport should not write its own entry')
        self.assertEqual(fetched, cached)

    def test_disabled_caches_nothing(self):
        self.client.fetch(self.resource, CacheMode.DISABLED).result(timeout=1)

        self.assertEqual([None], self.transport.committed)
        self.assertIsInstance(self.client.cached(self.resource, always).error, CacheMiss)

    def test_remove_cached_then_cached_is_a_miss(self):
        self.client.fetch(self.resource, CacheMode.MANUAL).result(timeout=1)

        self.client.remove_cached(self.resource)
        self.client.remove_cached(self.resource)

        self.assertIsInstance(self.client.cached(self.resource, always).error, CacheMiss)

    def test_expired_entry_is_invalidated(self):
        self.client.fetch(self.resource, CacheMode.MANUAL).result(timeout=1)

        self.assertIsInstance(self.client.cached(self.resource, never).error, CacheExpired)
        self.assertIsInstance(self.client.cached(self.resource, always).error, CacheMiss)

    def test_expired_entry_is_kept_without_auto_invalidation(self):
        self.configuration.should_invalidate_expired_cache = False
        self.client.fetch(self.resource, CacheMode.MANUAL).result(timeout=1)

        self.assertIsInstance(self.client.cached(self.resource, never).error, CacheExpired)
        self.assertIsInstance(self.client.cached(self.resource, never).error, CacheExpired)
        self.assertTrue(self.client.cached(self.resource, always).is_success)

    def test_validity_predicate_receives_the_entry_timestamp(self):
        timestamps = []
        self.configuration.clock = lambda: datetime(2024, 5, 1, tzinfo=timezone.utc)
        self.client.fetch(self.resource, CacheMode.MANUAL).result(timeout=1)

        self.client.cached(self.resource, lambda timestamp: timestamps.append(timestamp) or True)

        self.assertEqual([datetime(2024, 5, 1, tzinfo=timezone.utc)], timestamps)
        self.assertIsInstance(
            self.client.cached(self.resource, max_age(timedelta(hours=1),
                                                      clock=lambda: datetime(2024, 5, 1, 2, tzinfo=timezone.utc))).error,
            CacheExpired)

    def test_two_manual_fetches_store_one_entry(self):
        self.client.fetch(self.resource, CacheMode.MANUAL).result(timeout=1)
        self.transport.chunks = [b'{"id": 1, "price": 10.0}']
        self.client.fetch(self.resource, CacheMode.MANUAL).result(timeout=1)

        self.assertEqual(1, len(self.cache))
        self.assertEqual(Success(Item(id=1, price=10.0)), self.client.cached(self.resource, always))

    def test_manual_failure_is_not_cached(self):
        self.transport.status = 500

        self.client.fetch(self.resource, CacheMode.MANUAL).result(timeout=1)

        self.assertEqual(0, len(self.cache))

    def test_cached_entry_that_no_longer_decodes(self):
        self.transport.chunks = [b'{"id": 1, "price": "NaN"}']
        self.client.fetch(self.resource, CacheMode.MANUAL).result(timeout=1)

        self.assertTrue(math.isnan(self.client.cached(self.resource, always).value.price))
        changed = Resource(path='/items/1', response_type=List[Item])
        result = self.client.cached(changed, always)
        self.assertIsInstance(result, Failure)
        self.assertIsInstance(result.error, DecodingError)

    def test_cache_key_uses_the_cache_transform_on_both_paths(self):
        def transform(request: Request) -> Request:
            request.headers.pop('Authorization', None)
            request.uri = request.uri.split('?')[0]
            return request

        self.configuration.transform_cached = transform
        first = Resource(path='/items/1', query={'token': 'a'}, headers={'Authorization': 'a'}, response_type=Item)
        second = Resource(path='/items/1', query={'token': 'b'}, headers={'Authorization': 'b'}, response_type=Item)

        self.client.fetch(first, CacheMode.MANUAL).result(timeout=1)

        self.assertEqual(Success(Item(id=1, price=9.5)), self.client.cached(second, always))


class BrokenBody(BytesIO):
    def read(self, size=-1):
        raise ProtocolError('Connection broken')


def upstream_response(raw: BytesIO) -> requests.Response:
    response = requests.Response()
    response.status_code = 200
    response.reason = 'OK'
    response.headers = CaseInsensitiveDict({'Content-Type': 'application/json', 'Cache-Control': 'max-age=60'})
    response.raw = raw
    response.url = 'https://api.example.com/items/1'
    return response


class TestFetchClientOverTransport(TestCase):
    def setUp(self):
        self.transport = Transport(chunk_size=8)
        self.cache = MemoryCache()
        self.client = FetchClient(ClientConfiguration(base_url='https://api.example.com'), cache=self.cache,
                                  transport=self.transport)
        self.resource = Resource(path='/items/1', response_type=Item)
        when(self.transport.adapter)._send_upstream(...).thenAnswer(
            lambda *args, **kw: upstream_response(BytesIO(b'{"id": 1, "price": 9.5}')))

    def tearDown(self):
        self.client.close()
        self.transport.close()
        unstub()

    def test_manual_round_trip(self):
        fetched = self.client.fetch(self.resource, CacheMode.MANUAL).result(timeout=5)

        self.assertEqual(Success(Item(id=1, price=9.5)), fetched)
        self.assertEqual(fetched, self.client.cached(self.resource, always))
        self.assertEqual(1, len(self.cache))

    def test_disabled_caches_nothing(self):
        self.client.fetch(self.resource, CacheMode.DISABLED).result(timeout=5)
        self.client.fetch(self.resource, CacheMode.DISABLED).result(timeout=5)

        self.assertIsInstance(self.client.cached(self.resource, always).error, CacheMiss)
        verify(self.transport.adapter, times=2)._send_upstream(...)

    def test_policy_serves_the_second_fetch_from_the_transport_cache(self):
        first = self.client.fetch(self.resource, CacheMode.POLICY).result(timeout=5)
        second = self.client.fetch(self.resource, CacheMode.POLICY).result(timeout=5)

        self.assertEqual(Success(Item(id=1, price=9.5)), first)
        self.assertEqual(first, second)
        verify(self.transport.adapter, times=1)._send_upstream(...)
        self.assertIsInstance(self.client.cached(self.resource, always).error, CacheMiss)

    def test_broken_body_fails_the_fetch(self):
        when(self.transport.adapter)._send_upstream(...).thenAnswer(
            lambda *args, **kw: upstream_response(BrokenBody()))

        fetch = self.client.fetch(self.resource, CacheMode.MANUAL)
        result = fetch.result(timeout=5)
        fetch_state = fetch.state

        self.assertIsInstance(result, Failure)
        self.assertIsInstance(result.error, TransportError)
        self.assertIsInstance(result.error.cause, ProtocolError)
        self.assertEqual(0, len(self.cache))
        self.assertIn(fetch_state, (State.COMPLETED, State.DONE))

    def test_unpreparable_url_fails_the_fetch(self):
        client = FetchClient(ClientConfiguration(), cache=self.cache, transport=self.transport)

        result = client.fetch(Resource(path='/items')).result(timeout=5)

        self.assertIsInstance(result.error, TransportError)
        self.assertIsInstance(result.error.cause, requests.exceptions.MissingSchema)
