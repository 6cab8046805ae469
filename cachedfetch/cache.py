from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import json
import logging
import os
from pathlib import Path
import threading
from typing import Callable, Dict, Optional

from requests.structures import CaseInsensitiveDict

from .model import CacheEntry, Request, Response
from .util import clamp


logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def request_key(request: Request) -> str:
    """
    The default cache key for a request.

    The method is kept as-is, so a POST and a GET for the same URI are different entries. Callers that want them to
    share an entry should rewrite the method in their cache transform.
    """
    digest = hashlib.sha256()
    digest.update(request.method.upper().encode('utf-8'))
    digest.update(b'\n')
    digest.update(request.uri.encode('utf-8'))
    if request.body:
        digest.update(b'\n')
        digest.update(hashlib.sha256(request.body).digest())
    return digest.hexdigest()


def max_age(age: timedelta, clock: Callable[[], datetime] = utcnow) -> Callable[[datetime], bool]:
    """
    A validity predicate accepting entries written no longer than `age` ago.
    """
    def is_valid(timestamp: datetime) -> bool:
        return clock() - timestamp <= age
    return is_valid


def until(deadline: datetime, clock: Callable[[], datetime] = utcnow) -> Callable[[datetime], bool]:
    """
    A validity predicate accepting every entry until `deadline` has passed.
    """
    def is_valid(timestamp: datetime) -> bool:
        return clock() <= deadline
    return is_valid


class Cache(ABC):
    """
    An abstraction of a response cache.

    A response cache has a relatively narrow scope: to remember an entry under a key such that it can be recalled
    later. Note that this deliberately precludes certain responsibilities such as automatic cache invalidation. We rely
    on the users to determine when a cache entry is stale, and also how to replace it.

    Implementations must be safe to use from several threads at once.
    """

    @abstractmethod
    def lookup(self, key: str) -> Optional[CacheEntry]:
        """
        Retrieve the entry stored under `key`.

        @param key
          The key to look up in the cache.
        @return
          The stored entry, or `None` if there is none.
        """

    @abstractmethod
    def store(self, key: str, entry: CacheEntry) -> None:
        """
        Store `entry` under `key`, replacing any prior entry for that key.
        """

    @abstractmethod
    def remove(self, key: str) -> None:
        """
        Delete the entry stored under `key`. Does nothing if there is none.
        """

    def close(self):
        """
        Close any resources associated with the cache.
        """


class MemoryCache(Cache):
    def __init__(self) -> None:
        self.__entries: Dict[str, CacheEntry] = {}
        self.__lock = threading.Lock()

    def __len__(self) -> int:
        with self.__lock:
            return len(self.__entries)

    def lookup(self, key: str) -> Optional[CacheEntry]:
        with self.__lock:
            return self.__entries.get(key)

    def store(self, key: str, entry: CacheEntry) -> None:
        with self.__lock:
            self.__entries[key] = entry

    def remove(self, key: str) -> None:
        with self.__lock:
            self.__entries.pop(key, None)

    def close(self):
        with self.__lock:
            self.__entries.clear()


class HttpAwareCache:
    """
    The transport's own cache, which follows HTTP caching rules.

    Some examples are:
    - Checking Vary headers.
    - Only cache sensible responses (e.g., 200, 203, 300, 301 are used in cachecontrol).
    - Respecting the no-store, no-cache and max-age directives of the Cache-Control header.
    """

    def __init__(self, implementation: Cache, key: Callable[[Request], str] = request_key,
                 clock: Callable[[], datetime] = utcnow) -> None:
        self.__impl = implementation
        self.__key = key
        self.__clock = clock

    def get(self, request: Request) -> Optional[CacheEntry]:
        if not self._is_cachable_method(request.method):
            logger.info('Method {} is not cachable'.format(request.method))
            return None

        logger.info('Delegating cache lookup to decorated cache.')
        key = self.__key(request)
        entry = self.__impl.lookup(key)
        if entry is None:
            logger.info('Decorated cache did not find a matching cache entry.')
            return None

        # region Only serve response statuses that make sense to cache.
        if not self._is_cachable_status_code(entry.response.status):
            logger.info('Status code {} is not cachable'.format(entry.response.status))
            return None
        # endregion

        # region Only serve if all specific Vary headers match.
        vary = entry.response.headers.get('Vary', '')
        for key in (part.strip() for part in vary.split(',')):
            if not key:
                continue
            if key == '*':
                logger.info('Cache entry is rejected because it varies on everything.')
                return None
            if key not in entry.request.headers:
                logger.warning('The cache entry does not have all of its own Vary headers. Missing header: {}'.format(key))
                return None
            expected_value = entry.request.headers[key]

            if key not in request.headers:
                logger.info('Cache entry is rejected because the incoming request is missing a Vary header: {}'.format(key))
                return None
            value = request.headers[key]

            if expected_value != value:
                logger.info('Cache entry is rejected because the value for a Vary header is not equal to the value in the original request. Header: {}. Expected value: {}. Actual value: {}'.format(key, expected_value, value))
                return None
        # endregion

        # region Only serve if the entry is still fresh.
        directives = parse_cache_control(entry.response.headers.get('Cache-Control', ''))
        if 'no-cache' in directives:
            logger.info('Cache entry must be revalidated (no-cache).')
            return None
        if self.__clock() - entry.timestamp >= self._freshness_lifetime(directives):
            logger.info('Cache entry is stale. Removing it from the decorated cache.')
            self.__impl.remove(key)
            return None
        # endregion

        logger.info('Cache entry passed all HTTP checks. Returning entry from cache.')
        return entry

    def add(self, request: Request, entry: CacheEntry) -> Optional[CacheEntry]:
        if not self._is_cachable_status_code(entry.response.status):
            logger.info('Refusing to create cache entry. Status code {} is not cachable.'.format(entry.response.status))
            return None
        if not self._is_cachable_method(request.method):
            logger.info('Refusing to create cache entry. Method {} is not cachable.'.format(request.method))
            return None
        directives = parse_cache_control(entry.response.headers.get('Cache-Control', ''))
        if 'no-store' in directives:
            logger.info('Refusing to create cache entry. The response is marked no-store.')
            return None
        if 'no-cache' in directives:
            logger.info('Refusing to create cache entry. The response must always be revalidated (no-cache).')
            return None
        if self._freshness_lifetime(directives) <= timedelta(0):
            logger.info('Refusing to create cache entry. The response has no positive max-age.')
            return None

        logger.info('Delegating cache entry creation to decorated cache.')
        self.__impl.store(self.__key(request), entry)
        return entry

    def delete(self, request: Request) -> None:
        logger.info('Delegating cache entry deletion to decorated cache.')
        self.__impl.remove(self.__key(request))

    def close(self):
        self.__impl.close()

    def _is_cachable_status_code(self, status: Optional[int]) -> bool:
        return status in (200, 203, 300, 301,)

    def _is_cachable_method(self, method: str) -> bool:
        return method.upper() in {'GET'}

    def _freshness_lifetime(self, directives: Dict[str, Optional[str]]) -> timedelta:
        # A missing or malformed max-age means the response is never fresh.
        try:
            return timedelta(seconds=int(directives.get('max-age') or 0))
        except ValueError:
            logger.warning('Ignoring malformed max-age directive: {}'.format(directives['max-age']))
            return timedelta(0)


def parse_cache_control(value: str) -> Dict[str, Optional[str]]:
    directives: Dict[str, Optional[str]] = {}
    for part in value.split(','):
        name, _, argument = part.strip().partition('=')
        if name:
            directives[name.lower()] = argument.strip('"') if argument else None
    return directives


@dataclass
class FileCacheEntryModel:
    entry_path: Path
    body_path: Path
    entry: CacheEntry


class CorruptEntry(Exception):
    def __init__(self, entry_path: Path):
        super().__init__()
        self.__entry_path = entry_path

    @property
    def entry_path(self) -> Path:
        return self.__entry_path


class FileCache(Cache):
    def __init__(self, directory: Path, cache_directory_levels: int) -> None:
        """
        Initialize the file cache.

        @param directory
          The path to the root directory of the cache.
        @param cache_directory_levels
          The number of subdirectory levels to use in the cache directory. This
          will be clamped to be between 0 and 20, respectively.
        """
        self.__directory = Path(directory)
        self.__entry_directory = self.__directory / 'entries'
        self.__body_directory = self.__directory / 'bodies'
        self.__cache_directory_levels = clamp(cache_directory_levels, 0, 20)
        self.__lock = threading.Lock()

    def _get_path(self, key: str) -> Path:
        hashed = hashlib.sha256(key.encode('utf-8')).hexdigest()
        return self._split_path(hashed)

    def _split_path(self, path: str) -> Path:
        subdirectories = (list(path[:self.__cache_directory_levels])
                          + [path[self.__cache_directory_levels:]])
        return Path(*subdirectories)

    def _load_entry(self, key: str) -> FileCacheEntryModel:
        """
        Read a cache entry from a file.

        @param key
            The key of the desired cache entry. The path to the entry file will be deduced from it.
        @return
            The entry along with the paths of its entry file and body file.
        @throws FileNotFoundError
            If there is no entry file for `key`.
        @throws CorruptEntry
            If the entry file could not be parsed, or its body file is missing.
        """
        entry_path = self.__entry_directory / self._get_path(key)
        with open(entry_path, 'r') as f:
            try:
                serialized = json.load(f)
            except json.JSONDecodeError:
                raise CorruptEntry(entry_path)

        try:
            body_path = self.__body_directory / Path(serialized['response']['body'])
            request = serialized['request']
            response = serialized['response']
            timestamp = datetime.fromisoformat(serialized['timestamp'])
        except (KeyError, TypeError, ValueError):
            raise CorruptEntry(entry_path)

        try:
            body = body_path.read_bytes()
        except FileNotFoundError:
            logger.warning('The body file of entry {} is missing.'.format(entry_path))
            raise CorruptEntry(entry_path)

        try:
            entry = CacheEntry(
                request=Request(method=request['method'],
                                uri=request['uri'],
                                headers=CaseInsensitiveDict(request['headers']),
                                body=bytes.fromhex(request['body']) if request.get('body') else None),
                response=Response(status=response['status'],
                                  reason=response['reason'],
                                  headers=CaseInsensitiveDict(response['headers']),
                                  body=body,
                                  url=response.get('url')),
                timestamp=timestamp)
        except (KeyError, TypeError, ValueError):
            raise CorruptEntry(entry_path)
        return FileCacheEntryModel(entry_path=entry_path, body_path=body_path, entry=entry)

    def lookup(self, key: str) -> Optional[CacheEntry]:
        with self.__lock:
            try:
                logger.info('Looking at the file system for a cache entry matching the key.')
                entry_model = self._load_entry(key)
                logger.info('Loaded entry file. Returning the cache entry')
                return entry_model.entry
            except CorruptEntry as e:
                logger.warning('Found a corrupt cache entry. Deleting the entry file.')
                e.entry_path.unlink()
                return None
            except FileNotFoundError:
                logger.info('No matching cache entry found.')
                return None

    def store(self, key: str, entry: CacheEntry) -> None:
        with self.__lock:
            logger.info('Building path to the entry file.')
            entry_path = self.__entry_directory / self._get_path(key)
            stale_paths = self._paths_to_delete(key)

            logger.info('Building randomized path to the body file.')
            # We use a randomized body path as the entry can point to it anyways.
            body_path = self.__body_directory / self._split_path(os.urandom(32).hex())

            serialized = {
                'request': {
                    'method': entry.request.method,
                    'uri': entry.request.uri,
                    'headers': dict(entry.request.headers),
                    'body': entry.request.body.hex() if entry.request.body else None,
                },
                'response': {
                    'status': entry.response.status,
                    'reason': entry.response.reason,
                    'headers': dict(entry.response.headers),
                    'url': entry.response.url,
                    'body': str(body_path.relative_to(self.__body_directory)),
                },
                'timestamp': entry.timestamp.isoformat(),
            }

            logger.info('Writing the body file')
            body_path.parent.mkdir(parents=True, exist_ok=True)
            body_path.write_bytes(entry.response.body)

            logger.info('Creating entry file that points to the body file')
            temp_path = entry_path.with_name(entry_path.name + '.tmp')
            try:
                entry_path.parent.mkdir(parents=True, exist_ok=True)
                with open(temp_path, 'w') as f:
                    json.dump(serialized, f)
                os.replace(temp_path, entry_path)
            except Exception:
                logger.warning('Failed to write the entry file. Deleting the body file it would point to.')
                self._unlink([body_path, temp_path])
                raise

            # The previous entry file has been replaced, so only its body is left over.
            self._unlink([path for path in stale_paths if path != entry_path])

    def remove(self, key: str) -> None:
        with self.__lock:
            self._unlink(self._paths_to_delete(key))

    def _paths_to_delete(self, key: str):
        try:
            entry_model = self._load_entry(key)
            logger.info('Found a matching cache entry. Marking both the entry file and the body file for deletion.')
            return [entry_model.entry_path, entry_model.body_path]
        except CorruptEntry as e:
            logger.warning('Found a corrupt cache entry. Marking only the entry file for deletion.')
            return [e.entry_path]
        except FileNotFoundError:
            logger.info('No matching cache entry found. Nothing to delete.')
            return []

    def _unlink(self, paths) -> None:
        for path in paths:
            try:
                logger.info('Deleting {}'.format(path))
                path.unlink()
            except FileNotFoundError:
                logger.warning('{} was already deleted'.format(path))
