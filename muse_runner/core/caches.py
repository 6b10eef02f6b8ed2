"""Process-wide caches.

Values are filled lazily and never torn down. They are replaced whole,
never mutated in place, so concurrent readers only ever observe a complete
value.
"""
from typing import Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class ProcessCache(Generic[T]):
    """A value computed on first access and kept for the life of the process.

    There is no invalidation. If the underlying source changes (for example
    a template file is edited) the process must be restarted to pick it up.
    A loader that raises leaves the cache empty so the next access retries.
    """

    def __init__(self, loader: Callable[[], T]):
        self._loader = loader
        self._value: Optional[T] = None
        self._loaded = False

    @property
    def loaded(self) -> bool:
        return self._loaded

    def get(self) -> T:
        if not self._loaded:
            self._value = self._loader()
            self._loaded = True
        return self._value  # type: ignore[return-value]

    def clear(self) -> None:
        """Drop the cached value. Only used by tests."""
        self._value = None
        self._loaded = False
