"""
Turns response bodies into values.

A decoder is any callable taking the body bytes and returning a value; it signals failure by raising. The default
decoder parses JSON and converts it into the resource's `response_type`, guided by the type hints of dataclasses.
"""

import collections.abc
import dataclasses
from datetime import datetime, timedelta, timezone
from enum import Enum
import json
import math
import re
import typing
from typing import Any, Dict, Protocol, Type

from .errors import DecodeError
from .model import Resource


NON_FINITE_FLOATS = {
    'Infinity': math.inf,
    '-Infinity': -math.inf,
    'NaN': math.nan,
}
"""
The only strings accepted in place of a float. The mapping is exact: "nan" or "inf" are rejected.
"""

_ISO8601 = re.compile(
    r'^(?P<date>\d{4}-\d{2}-\d{2})T(?P<time>\d{2}:\d{2}:\d{2})'
    r'(?:\.(?P<fraction>\d+))?'
    r'(?P<offset>Z|[+-]\d{2}:?\d{2})$',
    re.IGNORECASE)


class Decoder(Protocol):
    def __call__(self, data: bytes) -> Any:
        ...


def parse_datetime(value: str) -> datetime:
    """
    Parse an ISO-8601 internet date-time, with or without fractional seconds.
    """
    match = _ISO8601.match(value)
    if match is None:
        raise DecodeError('Invalid date: {}'.format(value))

    try:
        parsed = datetime.strptime('{} {}'.format(match.group('date'), match.group('time')), '%Y-%m-%d %H:%M:%S')
    except ValueError:
        raise DecodeError('Invalid date: {}'.format(value))

    fraction = match.group('fraction')
    if fraction:
        parsed = parsed.replace(microsecond=int(fraction[:6].ljust(6, '0')))

    offset = match.group('offset').upper()
    if offset == 'Z':
        tz = timezone.utc
    else:
        sign = -1 if offset[0] == '-' else 1
        digits = offset[1:].replace(':', '')
        tz = timezone(sign * timedelta(hours=int(digits[:2]), minutes=int(digits[2:])))
    return parsed.replace(tzinfo=tz)


def _reject_constant(name: str):
    raise DecodeError('Invalid JSON value: {}'.format(name))


def _describe(target) -> str:
    return getattr(target, '__name__', None) or str(target)


def convert(value: Any, target: Any, path: str = '$') -> Any:
    """
    Convert a parsed JSON value into an instance of `target`.

    @param path
      Where `value` sits in the document. Used in error messages.
    @throws DecodeError
      If `value` does not fit `target`.
    """
    if target is Any or target is object:
        return value

    if target is type(None):
        if value is not None:
            raise DecodeError('{}: expected null'.format(path))
        return None

    origin = typing.get_origin(target)
    args = typing.get_args(target)

    if origin is typing.Union:
        if value is None and type(None) in args:
            return None
        errors = []
        for option in args:
            if option is type(None):
                continue
            try:
                return convert(value, option, path)
            except DecodeError as e:
                errors.append(str(e))
        raise DecodeError('{}: no matching type ({})'.format(path, '; '.join(errors)))

    if origin in (list, collections.abc.Sequence, collections.abc.Iterable) or target is list:
        if not isinstance(value, list):
            raise DecodeError('{}: expected an array'.format(path))
        item_type = args[0] if args else Any
        return [convert(item, item_type, '{}[{}]'.format(path, index)) for index, item in enumerate(value)]

    if origin in (dict, collections.abc.Mapping) or target is dict:
        if not isinstance(value, dict):
            raise DecodeError('{}: expected an object'.format(path))
        value_type = args[1] if len(args) == 2 else Any
        return {key: convert(item, value_type, '{}.{}'.format(path, key)) for key, item in value.items()}

    if dataclasses.is_dataclass(target) and isinstance(target, type):
        return _convert_dataclass(value, target, path)

    if target is float:
        if isinstance(value, bool):
            raise DecodeError('{}: expected a number'.format(path))
        if isinstance(value, (int, float)):
            return float(value)
        if isinstance(value, str) and value in NON_FINITE_FLOATS:
            return NON_FINITE_FLOATS[value]
        raise DecodeError('{}: expected a number'.format(path))

    if target is int:
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        raise DecodeError('{}: expected an integer'.format(path))

    if target is datetime:
        if not isinstance(value, str):
            raise DecodeError('{}: expected a date string'.format(path))
        try:
            return parse_datetime(value)
        except DecodeError as e:
            raise DecodeError('{}: {}'.format(path, e))

    if isinstance(target, type) and issubclass(target, Enum):
        try:
            return target(value)
        except ValueError:
            raise DecodeError('{}: {!r} is not a valid {}'.format(path, value, target.__name__))

    if isinstance(target, type):
        if isinstance(value, target):
            return value
        raise DecodeError('{}: expected {}'.format(path, _describe(target)))

    raise DecodeError('{}: unsupported type {}'.format(path, _describe(target)))


def _convert_dataclass(value: Any, target: Type, path: str) -> Any:
    if not isinstance(value, dict):
        raise DecodeError('{}: expected an object for {}'.format(path, target.__name__))

    hints = typing.get_type_hints(target)
    kwargs: Dict[str, Any] = {}
    for field in dataclasses.fields(target):
        if not field.init:
            continue
        if field.name in value:
            kwargs[field.name] = convert(value[field.name], hints.get(field.name, Any),
                                         '{}.{}'.format(path, field.name))
        elif field.default is dataclasses.MISSING and field.default_factory is dataclasses.MISSING:
            raise DecodeError('{}: missing key "{}"'.format(path, field.name))
    return target(**kwargs)


class TypedJSONDecoder(json.JSONDecoder):
    """
    Decodes JSON into `target`.

    Bare `NaN` and `Infinity` tokens are not valid JSON and are rejected; non-finite floats must be spelled as the
    strings "NaN", "Infinity" and "-Infinity".
    """

    def __init__(self, target: Any = Any, **kwargs) -> None:
        kwargs.setdefault('parse_constant', _reject_constant)
        super().__init__(**kwargs)
        self.__target = target

    @property
    def target(self) -> Any:
        return self.__target

    def decode(self, s, *args, **kwargs):
        try:
            result = super().decode(s, *args, **kwargs)
        except json.JSONDecodeError as e:
            raise DecodeError(str(e)) from e
        return convert(result, self.__target)

    def __call__(self, data: bytes) -> Any:
        try:
            text = data.decode('utf-8')
        except UnicodeDecodeError as e:
            raise DecodeError(str(e)) from e
        return self.decode(text)


def _identity(data: bytes) -> bytes:
    return data


def _text(data: bytes) -> str:
    try:
        return data.decode('utf-8')
    except UnicodeDecodeError as e:
        raise DecodeError(str(e)) from e


def decoder_for(resource: Resource) -> Decoder:
    """
    Select the decoder for `resource`.

    An explicit `resource.decoder` always wins. Otherwise the decoder is picked by `resource.response_type`: raw bytes
    are passed through, text is decoded as UTF-8, and everything else is parsed as JSON. With no response type the
    plain JSON value is returned.
    """
    if resource.decoder is not None:
        return resource.decoder
    if resource.response_type is bytes:
        return _identity
    if resource.response_type is str:
        return _text
    if resource.response_type is None:
        return TypedJSONDecoder(Any)
    return TypedJSONDecoder(resource.response_type)
