from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from io import BytesIO
import logging
import threading
from typing import Callable, Optional

import requests
from requests.adapters import HTTPAdapter
from requests.structures import CaseInsensitiveDict

from .cache import HttpAwareCache, MemoryCache, utcnow
from .errors import Cancelled
from .model import CacheEntry, Request, Response
from .util import Tee


logger = logging.getLogger(__name__)

WillCache = Callable[[CacheEntry], Optional[CacheEntry]]


class TransportDelegate(ABC):
    """
    Receives the events of one exchange.

    `will_cache_response` may be called before or after `did_complete`, or not at all. `did_finish` is always the
    last call.
    """

    def did_receive_response(self, response: Response) -> None:
        """
        The status and headers arrived. `response.body` is empty.
        """

    @abstractmethod
    def did_receive_data(self, chunk: bytes) -> None:
        pass

    def will_cache_response(self, proposed: CacheEntry) -> Optional[CacheEntry]:
        """
        The transport is about to write `proposed` into its own cache.

        @return
          The entry to write, or `None` to suppress the write.
        """
        return proposed

    @abstractmethod
    def did_complete(self, response: Optional[Response], error: Optional[BaseException]) -> None:
        pass

    def did_finish(self) -> None:
        pass


def to_request(requests_request: requests.PreparedRequest) -> Request:
    body = requests_request.body
    if isinstance(body, str):
        body = body.encode('utf-8')
    return Request(method=requests_request.method,
                   uri=requests_request.url,
                   headers=CaseInsensitiveDict(requests_request.headers),
                   body=body)


def to_response(requests_response: requests.Response, body: bytes = b'') -> Response:
    return Response(status=requests_response.status_code,
                    reason=requests_response.reason or '',
                    headers=CaseInsensitiveDict(requests_response.headers),
                    body=body,
                    url=requests_response.url)


class CachedHTTPAdapter(HTTPAdapter):
    """
    An adapter with its own HTTP-aware response cache.

    Callers can intercept writes into that cache by passing a `will_cache` hook to `send()`.
    """

    def __init__(self, cache: Optional[HttpAwareCache] = None, *args,
                 clock: Callable[[], datetime] = utcnow, **kw) -> None:
        super().__init__(*args, **kw)
        self.cache = cache if cache is not None else HttpAwareCache(MemoryCache())
        self.clock = clock

    def send(self, requests_request: requests.PreparedRequest, will_cache: Optional[WillCache] = None,
             **kw) -> requests.Response:
        """
        Send a request. Use the request information to see if it
        exists in the cache and cache the response if we need to and can.
        """
        request = to_request(requests_request)

        entry = self.cache.get(request)
        if entry is not None:
            logger.info('Serving {} {} from the cache.'.format(request.method, request.uri))
            return self._build_response(requests_request, entry)

        requests_response = self._send_upstream(requests_request, **kw)
        self._tee_body(request, requests_response, will_cache)
        return requests_response

    def _send_upstream(self, requests_request: requests.PreparedRequest, **kw) -> requests.Response:
        return super().send(requests_request, **kw)

    def _tee_body(self, request: Request, requests_response: requests.Response,
                  will_cache: Optional[WillCache]) -> None:
        raw = requests_response.raw
        if hasattr(raw, 'decode_content'):
            # `requests` decodes while streaming. Reading through the tee bypasses that, so let urllib3 do it.
            raw.decode_content = True

        body = BytesIO()

        def on_complete():
            logger.info('Response body of {} {} was fully read.'.format(request.method, request.uri))
            proposed = CacheEntry(request=request,
                                  response=to_response(requests_response, body.getvalue()),
                                  timestamp=self.clock())
            try:
                approved = will_cache(proposed) if will_cache is not None else proposed
                if approved is None:
                    logger.info('The cache write was suppressed.')
                    return
                self.cache.add(request, approved)
            except Exception:
                logger.exception('Failed to cache the response of {} {}'.format(request.method, request.uri))

        logger.info('Tee the response body so we can write to the cache as it is read.')
        # Only a body that is read to the end is ever proposed for caching.
        tee = Tee(raw, body, on_complete)
        # Lets `requests` still extract cookies from the underlying urllib3 response.
        tee._original_response = getattr(raw, '_original_response', None)
        requests_response.raw = tee

    def _build_response(self, requests_request: requests.PreparedRequest, entry: CacheEntry) -> requests.Response:
        result = requests.Response()
        result.status_code = entry.response.status
        result.reason = entry.response.reason
        result.headers = CaseInsensitiveDict(entry.response.headers)
        result.raw = BytesIO(entry.response.body)
        result.url = requests_request.url
        result.request = requests_request
        result.connection = self
        return result

    def close(self):
        self.cache.close()
        super().close()


class TransportTask:
    """
    A handle on one running exchange.
    """

    def __init__(self, delegate: TransportDelegate) -> None:
        self.__delegate = delegate
        self.__cancelled = threading.Event()
        self.future: Optional[Future] = None

    @property
    def cancelled(self) -> bool:
        return self.__cancelled.is_set()

    def cancel(self) -> None:
        """
        Stop the exchange. The delegate still receives a completion, with a `Cancelled` error.
        """
        self.__cancelled.set()
        if self.future is not None and self.future.cancel():
            # The exchange never started, so nobody else will tell the delegate.
            self.__delegate.did_complete(None, Cancelled())
            self.__delegate.did_finish()

    def wait(self, timeout: Optional[float] = None) -> None:
        if self.future is not None and not self.future.cancelled():
            self.future.result(timeout)


class Transport:
    """
    Runs exchanges on a thread pool over a `requests.Session`, streaming each body to a delegate.
    """

    def __init__(self,
                 session: Optional[requests.Session] = None,
                 cache: Optional[HttpAwareCache] = None,
                 chunk_size: int = 8192,
                 max_workers: int = 4) -> None:
        self.session = session if session is not None else requests.Session()
        self.adapter = CachedHTTPAdapter(cache)
        self.session.mount('http://', self.adapter)
        self.session.mount('https://', self.adapter)
        self.chunk_size = chunk_size
        self.__executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='cachedfetch')

    def start(self, request: Request, delegate: TransportDelegate) -> TransportTask:
        task = TransportTask(delegate)
        task.future = self.__executor.submit(self._run, request, delegate, task)
        return task

    def _run(self, request: Request, delegate: TransportDelegate, task: TransportTask) -> None:
        try:
            self._exchange(request, delegate, task)
        finally:
            delegate.did_finish()

    def _exchange(self, request: Request, delegate: TransportDelegate, task: TransportTask) -> None:
        if task.cancelled:
            delegate.did_complete(None, Cancelled())
            return

        # Every failure below ends in exactly one did_complete carrying the exception.
        try:
            prepared = self.session.prepare_request(requests.Request(method=request.method,
                                                                     url=request.uri,
                                                                     headers=dict(request.headers),
                                                                     data=request.body))
            settings = self.session.merge_environment_settings(prepared.url, {}, True, None, None)
            settings['stream'] = True

            logger.info('Sending {} {}'.format(prepared.method, prepared.url))
            requests_response = self.session.send(prepared,
                                                  timeout=request.timeout,
                                                  will_cache=delegate.will_cache_response,
                                                  **settings)
        except Exception as e:
            logger.warning('{} {} failed: {}'.format(request.method, request.uri, e))
            delegate.did_complete(None, e)
            return

        response = None
        try:
            with requests_response:
                response = to_response(requests_response)
                delegate.did_receive_response(response)
                # The body is read through a Tee, so urllib3 errors arrive here unwrapped.
                for chunk in requests_response.iter_content(self.chunk_size):
                    if task.cancelled:
                        raise Cancelled()
                    delegate.did_receive_data(chunk)
                if task.cancelled:
                    raise Cancelled()
        except Exception as e:
            logger.warning('Reading the body of {} {} failed: {}'.format(request.method, request.uri, e))
            delegate.did_complete(response, e)
            return

        delegate.did_complete(response, None)

    def close(self) -> None:
        self.__executor.shutdown(wait=True)
        self.session.close()
