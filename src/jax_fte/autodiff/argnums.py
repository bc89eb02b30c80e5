"""Argument selection for differentiation.

Resolves which positional (``argnums``) and keyword (``argnames``)
arguments a gradient is taken with respect to, and checks the selection
against the arguments of an actual call.
"""

from __future__ import annotations

import operator
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from jax_fte.errors import InvalidArgumentError


def _ensure_index_tuple(x: Any) -> tuple[int, ...]:
    """Convert x to a tuple of indices."""
    try:
        return (operator.index(x),)
    except TypeError:
        return tuple(map(operator.index, x))


def _ensure_str_set(x: str | Iterable[str]) -> frozenset[str]:
    if isinstance(x, str):
        return frozenset((x,))
    names = tuple(x)
    for name in names:
        if not isinstance(name, str):
            raise InvalidArgumentError(f"argument name is not a string: {name!r}")
    return frozenset(names)


def resolve_argnums_argnames(
    argnums: int | Sequence[int] | None,
    argnames: str | Iterable[str] = (),
    tag: str = "[grad]",
) -> tuple[tuple[int, ...], frozenset[str]]:
    """Canonicalize and validate an argument selection.

    When ``argnums`` is not given it defaults to the first positional
    argument, unless keyword arguments were selected.

    Args:
        argnums: Positional index or indices, or None.
        argnames: Keyword name or names.
        tag: Prefix for error messages.

    Returns:
        Tuple of (sorted indices, names).

    Raises:
        InvalidArgumentError: Nothing is selected, or an index is negative
            or repeated.

    Examples:
        >>> resolve_argnums_argnames(None)
        ((0,), frozenset())
        >>> resolve_argnums_argnames([2, 0], "bias")
        ((0, 2), frozenset({'bias'}))
        >>> resolve_argnums_argnames(None, ["w"])
        ((), frozenset({'w'}))

    """
    names = _ensure_str_set(argnames)
    if argnums is None:
        indices: tuple[int, ...] = () if names else (0,)
    else:
        indices = tuple(sorted(_ensure_index_tuple(argnums)))

    if not indices and not names:
        raise InvalidArgumentError(f"{tag} Gradient wrt no argument requested")
    if indices and indices[0] < 0:
        raise InvalidArgumentError(
            f"{tag} Can't compute the gradient of negative argument index {indices[0]}"
        )
    for prev, cur in zip(indices, indices[1:]):
        if prev == cur:
            raise InvalidArgumentError(f"{tag} Duplicate argument index {cur} is not allowed.")
    return indices, names


def check_call_selection(
    argnums: Sequence[int],
    argnames: Iterable[str],
    args: Sequence[Any],
    kwargs: Mapping[str, Any],
    tag: str = "[grad]",
) -> None:
    """Check a resolved selection against the arguments of a call.

    Raises:
        InvalidArgumentError: A selected index is past the last positional
            argument or a selected name was not passed.

    """
    if argnums and argnums[-1] >= len(args):
        raise InvalidArgumentError(
            f"{tag} Can't compute the gradient of argument index {argnums[-1]} "
            f"because the function is called with only {len(args)} positional arguments."
        )
    for name in argnames:
        if name not in kwargs:
            raise InvalidArgumentError(
                f"{tag} Can't compute the gradient of keyword argument '{name}' "
                "because the function is called with the following keyword "
                f"arguments {{{','.join(kwargs)}}}"
            )
