"""Call-signature adapter.

Packs the positional and keyword arguments of a call into a single
``(args, kwargs)`` tree so that one structure descriptor round-trips the
whole invocation, and replays calls from flat array lists.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from typing import Any

from jax import Array

from jax_fte.trees.codec import tree_flatten_with_structure, tree_unflatten


def pack_call(args: Sequence[Any], kwargs: Mapping[str, Any]) -> tuple[tuple[Any, ...], dict[str, Any]]:
    """Bundle a call's arguments as one tree: ``(tuple(args), dict(kwargs))``."""
    return tuple(args), dict(kwargs)


def flatten_call(
    args: Sequence[Any],
    kwargs: Mapping[str, Any],
) -> tuple[list[Array], Any]:
    """Flatten a whole call, positional arrays first then keyword arrays.

    Examples:
        >>> import jax.numpy as jnp
        >>> flat, structure = flatten_call((jnp.ones(2), 3), {"y": jnp.zeros(1)})
        >>> len(flat)
        2
        >>> structure
        ((*, 3), {'y': *})

    """
    return tree_flatten_with_structure(pack_call(args, kwargs), strict=False)


def unflatten_call(structure: Any, tensors: Sequence[Array]) -> tuple[tuple[Any, ...], dict[str, Any]]:
    """Rebuild ``(args, kwargs)`` from a call structure and its arrays."""
    args, kwargs = tree_unflatten(structure, tensors)
    return args, kwargs


def call_flat(
    fun: Callable[..., Any],
    structure: Any,
    tensors: Sequence[Array],
    strict: bool = False,
) -> tuple[list[Array], Any]:
    """Replay a call with substituted arrays and flatten what it returns.

    Args:
        fun: The user function.
        structure: Call structure from :func:`flatten_call`.
        tensors: Arrays to substitute, usually tracers.
        strict: Require the return value to contain only arrays.

    Returns:
        Tuple of (output arrays, output structure).

    """
    args, kwargs = unflatten_call(structure, tensors)
    return tree_flatten_with_structure(fun(*args, **kwargs), strict=strict)


def unwrap_single(args: tuple[Any, ...]) -> Any:
    """A lone positional argument is passed bare, several as a tuple."""
    if len(args) == 1:
        return args[0]
    return args
