"""Compilation signatures.

A signature encodes everything about a call that forces a compiled
function to be traced again: the shape of the argument trees and the value
of every non-array constant. Array values never enter the signature, only
their position.

Tokens are unsigned 64-bit integers. Each container marker is followed by
the container's length and each constant by a kind marker, so the encoding
is prefix free: a token's meaning is fully determined by the tokens before
it and two different trees cannot produce the same signature unless two
distinct strings (or dict keys) hash alike.
"""

from __future__ import annotations

import struct
from collections.abc import Mapping, Sequence
from typing import Any

from jax import Array

from jax_fte.errors import TreeLeafError
from jax_fte.trees.codec import NodeKind, node_kind

_MASK = (1 << 64) - 1

# Large primes near 2**64, unlikely to show up as constant payloads.
SEQUENCE_MARKER = 18446744073709551533
MAPPING_MARKER = 18446744073709551521
TENSOR_MARKER = 18446744073709551557
INT_MARKER = 18446744073709551437
BOOL_MARKER = 18446744073709551427
FLOAT_MARKER = 18446744073709551359
STR_MARKER = 18446744073709551337
NONE_MARKER = 18446744073709551293


def _int_token(value: int) -> int:
    if -(1 << 63) <= value < (1 << 63):
        return value & _MASK
    return hash(value) & _MASK


def _float_token(value: float) -> int:
    return struct.unpack("<Q", struct.pack("<d", value))[0]


def _encode(node: Any, tokens: list[int], tensors: list[Array]) -> None:
    kind = node_kind(node)
    if kind is NodeKind.LIST or kind is NodeKind.TUPLE:
        tokens.append(SEQUENCE_MARKER)
        tokens.append(len(node))
        for item in node:
            _encode(item, tokens, tensors)
    elif kind is NodeKind.DICT:
        tokens.append(MAPPING_MARKER)
        tokens.append(len(node))
        for key, item in node.items():
            tokens.append(hash(key) & _MASK)
            _encode(item, tokens, tensors)
    elif kind is NodeKind.TENSOR:
        tensors.append(node)
        tokens.append(TENSOR_MARKER)
    elif isinstance(node, bool):
        tokens.extend((BOOL_MARKER, int(node)))
    elif isinstance(node, int):
        tokens.extend((INT_MARKER, _int_token(node)))
    elif isinstance(node, float):
        tokens.extend((FLOAT_MARKER, _float_token(node)))
    elif isinstance(node, str):
        tokens.extend((STR_MARKER, hash(node) & _MASK))
    elif node is None:
        tokens.append(NONE_MARKER)
    else:
        raise TreeLeafError(
            "[compile] Function arguments must be trees of arrays or constants "
            "(floats, ints, strings or None), but received type "
            f"{type(node).__name__}."
        )


def compilation_signature(
    args: Sequence[Any],
    kwargs: Mapping[str, Any],
) -> tuple[tuple[int, ...], list[Array], int]:
    """Compute the signature of a call and collect its arrays.

    Positional arguments are encoded first and keyword arguments second, so
    the array order matches :func:`jax_fte.trees.calls.flatten_call`.

    Args:
        args: Positional arguments of the call.
        kwargs: Keyword arguments of the call.

    Returns:
        Tuple of (signature, arrays, number of positional arrays).

    Raises:
        TreeLeafError: An argument contains a leaf that is neither an array
            nor a supported constant.

    Examples:
        >>> import jax.numpy as jnp
        >>> sig_a, _, _ = compilation_signature((jnp.ones(2), 1), {})
        >>> sig_b, _, _ = compilation_signature((jnp.zeros(2), 1), {})
        >>> sig_c, _, _ = compilation_signature((jnp.zeros(2), 2), {})
        >>> sig_a == sig_b, sig_a == sig_c
        (True, False)

    """
    tokens: list[int] = []
    tensors: list[Array] = []
    _encode(tuple(args), tokens, tensors)
    num_args = len(tensors)
    _encode(dict(kwargs), tokens, tensors)
    return tuple(tokens), tensors, num_args
