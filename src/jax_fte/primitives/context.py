"""Process-wide registries shared by compiled functions.

Two registries live here, both keyed by the identity of a compiled
function:

- the trace registry, mapping ``(signature, shapeless)`` to the cached
  compiled entry that replays a trace without calling the user function;
- the structure registry, mapping a signature to the structure of the
  function's return value, recorded whenever the function is actually
  traced so cache hits can rebuild structured results.

A :class:`RuntimeContext` owns both behind one lock. The default context is
created lazily and cleared at interpreter exit; tests can swap in a fresh
one with :func:`use_context`.
"""

from __future__ import annotations

import atexit
import itertools
import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

logger = logging.getLogger(__name__)

_function_ids = itertools.count(1)


def next_function_id() -> int:
    """A process-unique identity for a compiled function.

    Identities are never reused, so a new wrapper can never observe entries
    left behind by a destroyed one.
    """
    return next(_function_ids)


class RuntimeContext:
    """Owns the trace and structure registries."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._traces: dict[int, dict[Any, Any]] = {}
        self._structures: dict[int, dict[Any, Any]] = {}

    def compiled_entry(self, fun_id: int, key: Any, factory: Callable[[], Any]) -> Any:
        """Return the entry cached under ``(fun_id, key)``, creating it on a miss."""
        with self._lock:
            entries = self._traces.setdefault(fun_id, {})
            entry = entries.get(key)
            if entry is None:
                logger.debug("New compiled entry for function %d (%d cached)", fun_id, len(entries))
                entry = factory()
                entries[key] = entry
            return entry

    def record_structure(self, fun_id: int, signature: Any, structure: Any) -> None:
        with self._lock:
            self._structures.setdefault(fun_id, {})[signature] = structure

    def output_structure(self, fun_id: int, signature: Any) -> Any:
        with self._lock:
            try:
                return self._structures[fun_id][signature]
            except KeyError:
                raise KeyError(
                    f"No output structure recorded for compiled function {fun_id}."
                ) from None

    def erase(self, fun_id: int) -> None:
        """Drop every trace and structure recorded for ``fun_id``."""
        with self._lock:
            dropped = len(self._traces.pop(fun_id, {}))
            self._structures.pop(fun_id, None)
        if dropped:
            logger.debug("Erased %d compiled entries of function %d", dropped, fun_id)

    def clear(self) -> None:
        with self._lock:
            self._traces.clear()
            self._structures.clear()
        logger.debug("Cleared compilation registries")

    def num_entries(self, fun_id: int | None = None) -> int:
        """Number of cached compiled entries, overall or for one function."""
        with self._lock:
            if fun_id is not None:
                return len(self._traces.get(fun_id, {}))
            return sum(len(entries) for entries in self._traces.values())

    def num_structures(self, fun_id: int | None = None) -> int:
        """Number of recorded output structures, overall or for one function."""
        with self._lock:
            if fun_id is not None:
                return len(self._structures.get(fun_id, {}))
            return sum(len(structures) for structures in self._structures.values())


_default_context: RuntimeContext | None = None
_default_lock = threading.Lock()
_local = threading.local()


def _clear_default_context() -> None:
    if _default_context is not None:
        _default_context.clear()


def get_context() -> RuntimeContext:
    """The active context: the innermost :func:`use_context`, else the default."""
    global _default_context
    override = getattr(_local, "context", None)
    if override is not None:
        return override
    if _default_context is None:
        with _default_lock:
            if _default_context is None:
                _default_context = RuntimeContext()
                atexit.register(_clear_default_context)
    return _default_context


@contextmanager
def use_context(context: RuntimeContext) -> Iterator[RuntimeContext]:
    """Make ``context`` the active context for the current thread.

    Examples:
        >>> with use_context(RuntimeContext()) as ctx:
        ...     ctx.num_entries()
        0

    """
    previous = getattr(_local, "context", None)
    _local.context = context
    try:
        yield context
    finally:
        _local.context = previous
