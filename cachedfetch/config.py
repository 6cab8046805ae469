from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import AbstractSet, Callable, Mapping, Optional, Union

from .cache import request_key, utcnow
from .model import Request
from .url import UNRESERVED


def _unchanged(request: Request) -> Request:
    return request


@dataclass
class ClientConfiguration:
    """
    The defaults applied to every request made by a client.
    """

    base_url: Optional[str] = None
    """
    Concatenated with each resource's path.
    """

    allowed_characters: Union[str, AbstractSet[str]] = UNRESERVED
    """
    Characters left as-is when encoding query parameters.
    """

    headers: Mapping[str, str] = field(default_factory=dict)
    """
    Sent with every request. A resource's own headers take precedence.
    """

    timeout: Optional[float] = None

    should_invalidate_expired_cache: bool = True
    """
    Whether `cached()` removes an entry it found to be expired.
    """

    transform_cached: Callable[[Request], Request] = _unchanged
    """
    Applied to a copy of a request before its cache key is computed, on both the
    write and the read path. Useful to drop private headers or unify methods.
    """

    cache_key: Callable[[Request], str] = request_key

    clock: Callable[[], datetime] = utcnow
    """
    Stamps new cache entries.
    """

    logger: Optional[logging.Logger] = None
    """
    Where the client and its fetches log to. Defaults to the module loggers.
    """
