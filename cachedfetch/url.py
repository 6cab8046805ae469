import string
from typing import AbstractSet, Mapping, Optional, Union


UNRESERVED = frozenset(string.ascii_letters + string.digits + '-._~')
"""
The RFC 3986 unreserved characters. Everything else is percent-encoded in query components by default.
"""


def percent_encode(value: str, allowed: Union[str, AbstractSet[str]] = UNRESERVED) -> str:
    """
    Percent-encode every character of `value` that is not in `allowed`.

    Characters are encoded as the upper-case hex of their UTF-8 bytes.
    """
    encoded = []
    for char in value:
        if char in allowed:
            encoded.append(char)
        else:
            encoded.extend('%{:02X}'.format(byte) for byte in char.encode('utf-8'))
    return ''.join(encoded)


def build_url(base: Optional[str],
              path: str,
              params: Mapping[str, str],
              allowed: Union[str, AbstractSet[str]] = UNRESERVED) -> str:
    """
    Concatenate `base` and `path`, then append `params` as an encoded query.

    Neither `base` nor `path` is re-encoded. Each parameter name and value is encoded on its own, and parameters are
    emitted sorted by name so that the same mapping always produces the same URL.
    """
    url = (base or '') + path
    if not params:
        return url

    fragment = ''
    if '#' in url:
        url, fragment = url.split('#', 1)
        fragment = '#' + fragment

    query = '&'.join('{}={}'.format(percent_encode(name, allowed), percent_encode(value, allowed))
                     for name, value in sorted(params.items()))
    if '?' not in url:
        separator = '?'
    elif url.endswith(('?', '&')):
        separator = ''
    else:
        separator = '&'
    return url + separator + query + fragment
