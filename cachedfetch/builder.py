from copy import copy

from requests.structures import CaseInsensitiveDict

from .config import ClientConfiguration
from .model import HTTPMethod, Request, Resource
from .url import build_url


def _method_name(method) -> str:
    if isinstance(method, HTTPMethod):
        return method.value
    return method.upper()


def build_request(resource: Resource, configuration: ClientConfiguration, for_caching: bool = False) -> Request:
    """
    Build the concrete request for `resource`.

    Client headers are applied before the resource's headers, so the resource wins on conflicts. The resource's
    `configure` hook runs last. With `for_caching`, the configuration's cache transform is applied to a copy of the
    result; this is the request cache keys are computed from.
    """
    headers = CaseInsensitiveDict()
    headers.update(configuration.headers)
    headers.update(resource.headers)

    request = Request(
        method=_method_name(resource.method),
        uri=build_url(configuration.base_url, resource.path, resource.query, configuration.allowed_characters),
        headers=headers,
        body=resource.body,
        timeout=configuration.timeout,
    )
    if resource.configure is not None:
        resource.configure(request)

    if not for_caching:
        return request
    return cache_request(request, configuration)


def cache_request(request: Request, configuration: ClientConfiguration) -> Request:
    """
    The request a cache key is computed from. `request` itself is left untouched.
    """
    cached = copy(request)
    cached.headers = CaseInsensitiveDict(request.headers)
    return configuration.transform_cached(cached)
