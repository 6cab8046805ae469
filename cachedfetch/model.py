"""
Defines types to use in the fetch and caching interfaces.

These types are as simple as possible in order to most conveniently consume and
produce instances of them.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Mapping, MutableMapping, Optional

from requests.structures import CaseInsensitiveDict


class HTTPMethod(str, Enum):
    GET = 'GET'
    POST = 'POST'
    PUT = 'PUT'
    PATCH = 'PATCH'
    DELETE = 'DELETE'
    HEAD = 'HEAD'


class CacheMode(Enum):
    """
    Controls whether and how a fetch's response is persisted.
    """

    POLICY = 'policy'
    """
    Defer to the transport's own cache and its reading of the cache headers.
    """

    MANUAL = 'manual'
    """
    Store every successful response in the client's cache, even those without
    cache-related headers. The transport's own cache write is suppressed.
    """

    DISABLED = 'disabled'
    """
    Prevent caching altogether.
    """


@dataclass
class Request:
    """
    Represents a concrete outgoing request.
    """

    method: str
    """
    The HTTP method of the request. E.g., "GET".
    """

    uri: str
    """
    The fully built URL, including the encoded query string.
    """

    headers: MutableMapping[str, str] = field(default_factory=CaseInsensitiveDict)
    """
    All the headers being sent with the request.
    """

    body: Optional[bytes] = None

    timeout: Optional[float] = None
    """
    Passed through to the transport. `None` uses the transport's default.
    """


@dataclass
class Response:
    """
    Represents an arbitrary response, without any bells and whistles.

    While a response is streaming, `body` is empty and only the metadata is
    meaningful.
    """

    status: Optional[int]
    """
    The status code of the response. E.g., 200 or 400. `None` when the exchange
    did not produce an HTTP response.
    """

    reason: str = ''

    headers: Mapping[str, str] = field(default_factory=CaseInsensitiveDict)
    """
    All the headers sent with the response.
    """

    body: bytes = b''

    url: Optional[str] = None


@dataclass(frozen=True)
class CacheEntry:
    """
    A cache entry.

    The timestamp is the instant the entry was written. Whether an entry is
    still valid is not decided here; readers pass their own predicate over it.
    """
    request: Request
    response: Response
    timestamp: datetime


@dataclass(frozen=True)
class Resource:
    """
    An abstract description of one REST call, prior to building the request.
    """

    path: str
    """
    Appended to the client's base URL as-is. May be a full URL if the client has
    no base URL.
    """

    method: str = HTTPMethod.GET.value

    query: Mapping[str, str] = field(default_factory=dict)

    headers: Mapping[str, str] = field(default_factory=dict)

    body: Optional[bytes] = None

    configure: Optional[Callable[[Request], None]] = field(default=None, compare=False)
    """
    Called with the built request just before dispatch. It may change anything,
    including the method and URL.
    """

    response_type: Any = None
    """
    The type the response body decodes into. See `decoding.decoder_for`.
    """

    decoder: Optional[Callable[[bytes], Any]] = field(default=None, compare=False)
    """
    Overrides the decoder selected by `response_type`.
    """
