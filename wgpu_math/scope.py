"""Scopes: deterministic disposal of intermediate arrays.

A ``Scope`` records the arrays created while it is the innermost open
scope. When it closes, every tracked array that was not kept is disposed
(in tracking order) and every kept array is handed to the enclosing scope,
or to the caller when the scope is outermost.
"""

import logging
from typing import Callable, List, Optional

from wgpu_math.errors import UseAfterDisposeError
from wgpu_math.ndarray import NDArray

logger = logging.getLogger(__name__)


class Scope:
    """Ordered set of tracked arrays (deduplicated by data handle)."""

    def __init__(self, name: Optional[str] = None):
        self.name = name
        self.closed = False
        self._tracked: List[NDArray] = []
        self._handles = set()
        self._kept = set()
        self._on_close: List[Callable[[], None]] = []

    @property
    def tracked(self) -> List[NDArray]:
        return list(self._tracked)

    def track(self, x: NDArray) -> NDArray:
        """Register ``x`` for disposal when this scope closes."""
        if self.closed:
            raise RuntimeError(f"Scope {self.name!r} is already closed")
        handle = id(x.data_handle)
        if handle not in self._handles:
            self._handles.add(handle)
            self._tracked.append(x)
        return x

    def keep(self, x: NDArray) -> NDArray:
        """Let ``x`` survive this scope. Keeping an untracked array is a no-op."""
        handle = id(x.data_handle)
        if handle in self._handles:
            self._kept.add(handle)
        return x

    def is_kept(self, x: NDArray) -> bool:
        return id(x.data_handle) in self._kept

    def on_close(self, callback: Callable[[], None]):
        """Run ``callback`` when the scope closes, before any disposal."""
        self._on_close.append(callback)

    def __repr__(self):
        return f"Scope({self.name!r}, tracked={len(self._tracked)}, kept={len(self._kept)})"


class ScopeStack:
    """The stack of open scopes of one math context."""

    def __init__(self):
        self._scopes: List[Scope] = []

    @property
    def current(self) -> Optional[Scope]:
        return self._scopes[-1] if self._scopes else None

    @property
    def depth(self) -> int:
        return len(self._scopes)

    def push(self, name: Optional[str] = None) -> Scope:
        scope = Scope(name)
        self._scopes.append(scope)
        return scope

    def close(self, scope: Scope, retain: bool = False):
        """
        Pop ``scope``, dispose its unkept arrays and reparent the kept ones.

        With ``retain`` (a tape is recording and may still need the arrays)
        unkept arrays are reparented too when there is an enclosing scope.
        Every unkept array is attempted even if an earlier dispose fails;
        the scope is popped either way and the first failure is re-raised.
        """
        if self.current is not scope:
            raise RuntimeError(
                f"Scope {scope.name!r} closed out of order; scopes must exit innermost first"
            )
        self._scopes.pop()
        scope.closed = True
        parent = self.current

        for callback in scope._on_close:
            callback()

        first_error = None
        for x in scope._tracked:
            if scope.is_kept(x) or (retain and parent is not None):
                if parent is not None:
                    parent.track(x)
                continue
            try:
                x.dispose()
            except UseAfterDisposeError as e:
                logger.error("Scope %r: %s", scope.name, e)
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error
