from datetime import datetime
import logging
from typing import Callable, Optional

from .builder import build_request
from .cache import Cache, MemoryCache
from .config import ClientConfiguration
from .decoding import decoder_for
from .errors import CacheExpired, CacheMiss, DecodingError
from .model import CacheMode, Resource
from .orchestrator import FetchOrchestrator
from .result import Failure, Result, Success
from .transport import Transport


logger = logging.getLogger(__name__)


class FetchClient:
    """
    Fetches resources, and reads back and invalidates the responses it cached manually.

    @param configuration
      Defaults applied to every request.
    @param cache
      Where responses fetched in `CacheMode.MANUAL` are stored. Shared by all fetches of this client.
    @param transport
      Performs the exchanges. It carries its own HTTP cache, used in `CacheMode.POLICY`.
    """

    def __init__(self,
                 configuration: Optional[ClientConfiguration] = None,
                 cache: Optional[Cache] = None,
                 transport: Optional[Transport] = None) -> None:
        self.configuration = configuration if configuration is not None else ClientConfiguration()
        self.__owns_cache = cache is None
        self.__owns_transport = transport is None
        self.cache = cache if cache is not None else MemoryCache()
        self.transport = transport if transport is not None else Transport()

    def __enter__(self) -> 'FetchClient':
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def _log(self) -> logging.Logger:
        return self.configuration.logger or logger

    def fetch(self,
              resource: Resource,
              cache_mode: CacheMode = CacheMode.POLICY,
              completion: Optional[Callable[[Result], None]] = None) -> FetchOrchestrator:
        """
        Start fetching `resource`.

        @param cache_mode
          What happens to the transport's proposal to cache the response.
        @param completion
          Called with the `Success` or `Failure` once the fetch completes, on a transport thread.
        @return
          The running fetch. Its `result()` waits for the same value passed to `completion`.
        """
        request = build_request(resource, self.configuration)
        orchestrator = FetchOrchestrator(request, cache_mode, decoder_for(resource), self.configuration, self.cache)
        if completion is not None:
            orchestrator.add_done_callback(completion)
        return orchestrator.start(self.transport)

    def cached(self, resource: Resource, is_valid: Callable[[datetime], bool]) -> Result:
        """
        Read the response cached for `resource` by a fetch in `CacheMode.MANUAL`.

        @param is_valid
          Given the time the entry was written, tells whether it may still be used.
        @return
          A `Success` with the decoded response, or a `Failure` with `CacheMiss`, `CacheExpired` or `DecodingError`.
        """
        request = build_request(resource, self.configuration, for_caching=True)
        key = self.configuration.cache_key(request)

        entry = self.cache.lookup(key)
        if entry is None:
            self._log.info('No cache entry for {} {}'.format(request.method, request.uri))
            return Failure(CacheMiss())

        if not is_valid(entry.timestamp):
            self._log.info('Cache entry for {} {} from {} has expired'.format(request.method, request.uri,
                                                                             entry.timestamp.isoformat()))
            if self.configuration.should_invalidate_expired_cache:
                self.cache.remove(key)
            return Failure(CacheExpired())

        try:
            return Success(decoder_for(resource)(entry.response.body))
        except Exception as e:
            return Failure(DecodingError(e))

    def remove_cached(self, resource: Resource) -> None:
        request = build_request(resource, self.configuration, for_caching=True)
        self._log.info('Removing the cache entry for {} {}'.format(request.method, request.uri))
        self.cache.remove(self.configuration.cache_key(request))

    def close(self) -> None:
        if self.__owns_transport:
            self.transport.close()
        if self.__owns_cache:
            self.cache.close()
