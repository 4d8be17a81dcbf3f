"""Readers of API objects and a getter with read-after-create consistency."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol, TypeVar

from .errors import NotFoundError
from .model import ObjectKey

T = TypeVar("T")


class Reader(Protocol):
    """Something that reads API objects by kind."""

    def get(self, kind: type[T], key: ObjectKey) -> T:
        """Return the object, raising NotFoundError if it does not exist."""
        ...

    def list(
        self,
        kind: type[T],
        *,
        namespace: str | None = None,
        fields: Mapping[str, str] | None = None,
    ) -> list[T]:
        """Return the objects of a kind, optionally filtered."""
        ...


class RetryMissingGetter:
    """Read the cache first and fall back to the API server when the
    object is missing there.

    One-shot callers need to see objects they have just created, which
    the cache may not hold yet.
    """

    def __init__(self, cache_reader: Reader, api_reader: Reader) -> None:
        self._cache_reader = cache_reader
        self._api_reader = api_reader

    def get(self, kind: type[T], key: ObjectKey) -> T:
        try:
            return self._cache_reader.get(kind, key)
        except NotFoundError:
            return self._api_reader.get(kind, key)