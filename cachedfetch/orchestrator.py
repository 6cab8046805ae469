from concurrent.futures import Future
from enum import Enum
import logging
import threading
from typing import Any, Callable, Optional

from .builder import cache_request
from .cache import Cache
from .classifier import classify
from .config import ClientConfiguration
from .errors import DecodingError
from .model import CacheEntry, CacheMode, Request, Response
from .result import Failure, Result, Success
from .transport import Transport, TransportDelegate, TransportTask


logger = logging.getLogger(__name__)


class State(Enum):
    IDLE = 'idle'
    REQUESTING = 'requesting'
    STREAMING = 'streaming'
    COMPLETED = 'completed'
    DONE = 'done'


class CacheDecision(Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    """
    The transport's own cache write went ahead unchanged.
    """
    STORED = 'stored'
    """
    The response went into the client's cache instead of the transport's.
    """
    SUPPRESSED = 'suppressed'


class FetchOrchestrator(TransportDelegate):
    """
    Drives a single fetch: dispatches the request, collects the streamed body, classifies and decodes it once the
    exchange completes, and decides what happens to the transport's proposed cache write.

    The result is delivered exactly once, through a `concurrent.futures.Future`. The cache decision touches only the
    cache store, and completion touches only the body buffer, so the transport may call them in either order.
    """

    def __init__(self,
                 request: Request,
                 cache_mode: CacheMode,
                 decoder: Callable[[bytes], Any],
                 configuration: ClientConfiguration,
                 cache: Cache) -> None:
        self.__request = request
        self.__cache_mode = cache_mode
        self.__decoder = decoder
        self.__configuration = configuration
        self.__cache = cache
        self.__log = configuration.logger or logger

        self.__lock = threading.Lock()
        self.__state = State.IDLE
        self.__cache_decision = CacheDecision.PENDING
        self.__buffer = bytearray()
        self.__response: Optional[Response] = None
        self.__delivered = False
        self.__finished = False
        self.__future: Future = Future()
        self.__task: Optional[TransportTask] = None

    @property
    def request(self) -> Request:
        return self.__request

    @property
    def cache_mode(self) -> CacheMode:
        return self.__cache_mode

    @property
    def state(self) -> State:
        return self.__state

    @property
    def cache_decision(self) -> CacheDecision:
        return self.__cache_decision

    def start(self, transport: Transport) -> 'FetchOrchestrator':
        with self.__lock:
            if self.__state is not State.IDLE:
                raise RuntimeError('The fetch of {} was already started.'.format(self.__request.uri))
            self.__state = State.REQUESTING
        self.__log.info('Fetching {} {} (cache mode: {})'.format(self.__request.method, self.__request.uri,
                                                                 self.__cache_mode.value))
        self.__task = transport.start(self.__request, self)
        return self

    def cancel(self) -> None:
        if self.__task is not None:
            self.__task.cancel()

    def done(self) -> bool:
        return self.__future.done()

    def result(self, timeout: Optional[float] = None) -> Result:
        """
        Wait for the fetch to complete and return its result.
        """
        return self.__future.result(timeout)

    def add_done_callback(self, fn: Callable[[Result], None]) -> None:
        self.__future.add_done_callback(lambda future: fn(future.result()))

    # region TransportDelegate

    def did_receive_response(self, response: Response) -> None:
        with self.__lock:
            self.__response = response
            if self.__state is State.REQUESTING:
                self.__state = State.STREAMING

    def did_receive_data(self, chunk: bytes) -> None:
        with self.__lock:
            if self.__delivered:
                self.__log.warning('Dropping {} bytes received after completion.'.format(len(chunk)))
                return
            self.__state = State.STREAMING
            self.__buffer.extend(chunk)

    def did_complete(self, response: Optional[Response], error: Optional[BaseException]) -> None:
        with self.__lock:
            if self.__delivered:
                self.__log.warning('Ignoring a repeated completion of {} {}.'.format(self.__request.method,
                                                                                     self.__request.uri))
                return
            self.__delivered = True
            if response is None:
                response = self.__response
            body = bytes(self.__buffer)
            self.__buffer = bytearray()
            self.__state = State.COMPLETED

        result = classify(body, response, error).flat_map(self._decode)
        if result.is_success:
            self.__log.info('Fetched {} {}'.format(self.__request.method, self.__request.uri))
        else:
            self.__log.info('Fetching {} {} failed: {}'.format(self.__request.method, self.__request.uri,
                                                              result.error))
        self.__future.set_result(result)
        self._finish_if_resolved()

    def will_cache_response(self, proposed: CacheEntry) -> Optional[CacheEntry]:
        if self.__cache_mode is CacheMode.POLICY:
            self.__cache_decision = CacheDecision.APPROVED
            return proposed

        if self.__cache_mode is CacheMode.MANUAL:
            try:
                self._store(proposed)
            except Exception:
                self.__log.exception('Failed to store the response of {} {} in the cache.'.format(
                    self.__request.method, self.__request.uri))
                self.__cache_decision = CacheDecision.SUPPRESSED
            return None

        self.__cache_decision = CacheDecision.SUPPRESSED
        return None

    def did_finish(self) -> None:
        with self.__lock:
            self.__finished = True
        self._finish_if_resolved()

    # endregion

    def _decode(self, body: bytes) -> Result:
        try:
            return Success(self.__decoder(body))
        except Exception as e:
            return Failure(DecodingError(e))

    def _store(self, proposed: CacheEntry) -> None:
        outcome = classify(proposed.response.body, proposed.response, None)
        if not outcome.is_success:
            self.__log.info('Not caching {} {}: {}'.format(self.__request.method, self.__request.uri, outcome.error))
            self.__cache_decision = CacheDecision.SUPPRESSED
            return

        request = cache_request(self.__request, self.__configuration)
        key = self.__configuration.cache_key(request)
        entry = CacheEntry(request=request, response=proposed.response, timestamp=self.__configuration.clock())
        self.__cache.store(key, entry)
        self.__log.info('Stored {} {} in the cache under {}'.format(self.__request.method, self.__request.uri, key))
        self.__cache_decision = CacheDecision.STORED

    def _finish_if_resolved(self) -> None:
        with self.__lock:
            if self.__delivered and self.__finished:
                self.__state = State.DONE
                self.__buffer = bytearray()
