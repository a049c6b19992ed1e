"""Generation tokens for discarding stale asynchronous results.

Every request captures a RequestToken for its logical scope (an open view,
a session instance) before it suspends. When the result comes back it is
applied only if the token is still current:

- issuing a newer request on the same scope supersedes older ones, so
  overlapping refreshes resolve to the newest one regardless of completion
  order;
- the token also remembers the key the request targeted (branch, base ref,
  pull request number); a token for key A is never current once the scope
  has moved to key B;
- invalidating a scope (closing a view or session) makes every outstanding
  token for it stale.

In-flight processes are never killed; only their results are dropped.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Hashable, Optional, TypeVar

from .observability import log_debug

T = TypeVar("T")

_CLOSED = object()


@dataclass(frozen=True)
class RequestToken:
    """Generation captured when a request was issued."""

    scope: str
    generation: int
    key: Optional[Hashable] = None


class StalenessGuard:
    """Monotonic generation counter per scope."""

    def __init__(self) -> None:
        self._generations: Dict[str, int] = {}
        self._keys: Dict[str, Any] = {}

    def current(self, scope: str) -> int:
        return self._generations.get(scope, 0)

    def issue(self, scope: str, key: Optional[Hashable] = None) -> RequestToken:
        """Start a new request on ``scope``, superseding earlier ones."""
        generation = self.current(scope) + 1
        self._generations[scope] = generation
        self._keys[scope] = key
        return RequestToken(scope=scope, generation=generation, key=key)

    def invalidate(self, scope: str) -> None:
        """Make every outstanding token for ``scope`` stale."""
        self._generations[scope] = self.current(scope) + 1
        self._keys[scope] = _CLOSED

    def discard(self, scope: str) -> None:
        """Forget ``scope`` entirely. Its outstanding tokens can never match again."""
        self._generations.pop(scope, None)
        self._keys.pop(scope, None)

    def is_current(self, token: RequestToken) -> bool:
        if self._generations.get(token.scope) != token.generation:
            return False
        return self._keys.get(token.scope) == token.key

    def apply(self, token: RequestToken, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> bool:
        """Run ``fn`` only if ``token`` is still current. Returns whether it ran."""
        if not self.is_current(token):
            log_debug(
                "Discarding stale result",
                scope=token.scope,
                generation=token.generation,
                current=self.current(token.scope),
            )
            return False
        fn(*args, **kwargs)
        return True

    def guarded(self, token: RequestToken, callback: Callable[..., Any]) -> Callable[..., bool]:
        """Wrap ``callback`` so it only fires while ``token`` is current."""

        def _wrapper(*args: Any, **kwargs: Any) -> bool:
            return self.apply(token, callback, *args, **kwargs)

        return _wrapper


class Session:
    """An open workflow session with its own generation scope.

    Constructed open; ``close()`` invalidates it permanently and drops its
    scope from the guard, so a shared guard does not grow with every view. A closed
    session is never reopened: construct a new one instead. Requests started
    through ``begin()`` are current only while the session is open and no
    newer request has been started.
    """

    _ids = itertools.count(1)

    def __init__(self, name: str, guard: Optional[StalenessGuard] = None):
        self.name = name
        self.guard = guard or StalenessGuard()
        self.scope = f"{name}#{next(self._ids)}"
        self._closed = False
        self.guard.issue(self.scope)

    @property
    def is_open(self) -> bool:
        return not self._closed

    def begin(self, key: Optional[Hashable] = None) -> RequestToken:
        """Issue a token for a request made on behalf of this session."""
        if self._closed:
            return RequestToken(scope=self.scope, generation=-1, key=key)
        return self.guard.issue(self.scope, key)

    def is_current(self, token: RequestToken) -> bool:
        return not self._closed and self.guard.is_current(token)

    def apply(self, token: RequestToken, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> bool:
        if self._closed:
            log_debug("Discarding result for closed session", scope=self.scope)
            return False
        return self.guard.apply(token, fn, *args, **kwargs)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.guard.discard(self.scope)


class LatestValue(Generic[T]):
    """Shared state slot that only accepts results from current tokens."""

    def __init__(self, guard: StalenessGuard, scope: str, initial: Optional[T] = None):
        self.guard = guard
        self.scope = scope
        self.value: Optional[T] = initial
        self.key: Optional[Hashable] = None

    def begin(self, key: Optional[Hashable] = None) -> RequestToken:
        return self.guard.issue(self.scope, key)

    def offer(self, token: RequestToken, value: T) -> bool:
        """Publish ``value`` if ``token`` is current; otherwise drop it."""

        def _store() -> None:
            self.value = value
            self.key = token.key

        return self.guard.apply(token, _store)
