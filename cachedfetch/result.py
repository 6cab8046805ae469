from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar, Union


T = TypeVar('T')
U = TypeVar('U')


@dataclass(frozen=True)
class Success(Generic[T]):
    value: T

    @property
    def is_success(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value

    def map(self, fn: Callable[[T], U]) -> 'Success[U]':
        return Success(fn(self.value))

    def flat_map(self, fn: Callable[[T], 'Result']) -> 'Result':
        return fn(self.value)


@dataclass(frozen=True)
class Failure:
    error: Exception

    @property
    def is_success(self) -> bool:
        return False

    def unwrap(self) -> Any:
        raise self.error

    def map(self, fn: Callable[[Any], Any]) -> 'Failure':
        return self

    def flat_map(self, fn: Callable[[Any], 'Result']) -> 'Failure':
        return self


Result = Union[Success, Failure]
