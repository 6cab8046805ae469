"""
Errors surfaced by fetches and cache reads.

None of these are raised at the caller directly. They are carried inside a
`result.Failure`; calling `unwrap()` on the failure raises them.
"""

from http import HTTPStatus
from typing import Optional

from .model import Response


def _status_phrase(status: int) -> str:
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return 'Unknown'


class FetchError(Exception):
    """
    Base class for failures of the fetch path.
    """


class CacheError(Exception):
    """
    Base class for failures of the cache read path.
    """


class Cancelled(Exception):
    """
    Raised inside the transport when its task was cancelled.
    """

    def __init__(self) -> None:
        super().__init__('The task was cancelled.')


class TransportError(FetchError):
    def __init__(self, cause: BaseException) -> None:
        super().__init__('Network error: {}'.format(cause))
        self.__cause = cause

    @property
    def cause(self) -> BaseException:
        return self.__cause


class NoResponse(FetchError):
    def __init__(self) -> None:
        super().__init__('Empty URL response')


class NonHTTPResponse(FetchError):
    def __init__(self, response: Response) -> None:
        super().__init__('Invalid HTTP response from {}'.format(response.url))
        self.response = response


class HTTPError(FetchError):
    """
    A non-2xx response. The body is kept for diagnostics.
    """

    def __init__(self, status: int, body: Optional[bytes], response: Optional[Response] = None) -> None:
        super().__init__('HTTP error {} - {}'.format(status, _status_phrase(status)))
        self.status = status
        self.body = body
        self.response = response


class EmptyBody(FetchError):
    def __init__(self, status: int, response: Optional[Response] = None) -> None:
        super().__init__('No data received. HTTP {} - {}'.format(status, _status_phrase(status)))
        self.status = status
        self.response = response


class CacheMiss(CacheError):
    def __init__(self) -> None:
        super().__init__('The requested item was not found in the cache.')


class CacheExpired(CacheError):
    def __init__(self) -> None:
        super().__init__('The cached item has expired and is no longer valid.')


class DecodeError(ValueError):
    """
    Raised by the default JSON decoder when a payload does not fit the target type.
    """


class DecodingError(FetchError, CacheError):
    """
    The body was present, but the decoder rejected it.
    """

    def __init__(self, cause: BaseException) -> None:
        super().__init__('Unable to decode the response. {}'.format(cause))
        self.__cause = cause

    @property
    def cause(self) -> BaseException:
        return self.__cause
