"""Structured-tree codec.

Every transform in this package follows the same pattern: peel the arrays
out of an arbitrarily nested call, hand the flat list to a primitive
transform, and put the results back where they came from. This module is
that pattern's single source of truth, so all transforms agree on leaf
order (depth first, left to right, dict values in insertion order) and on
how malformed trees are reported.

A tree is built from a closed set of node kinds (:class:`NodeKind`):

- ``LIST`` and ``TUPLE``: ordered sequences (named tuples keep their type)
- ``DICT``: key-ordered mappings
- ``TENSOR``: a ``jax.Array`` (tracers included)
- ``CONSTANT``: anything else (ints, floats, strings, None, ...)

A *structure descriptor* is the same tree with every array replaced by
:data:`PLACEHOLDER`. Together with the flat array list it rebuilds the
original tree exactly.

References:
    - JAX pytrees: https://jax.readthedocs.io/en/latest/pytrees.html
    - JAX source: jax/_src/tree_util.py

"""

from __future__ import annotations

import enum
from collections.abc import Callable, Sequence
from typing import Any

from jax import Array

from jax_fte.errors import ArityError, StructureMismatchError, TreeLeafError


class NodeKind(enum.Enum):
    """The closed set of node kinds a tree is made of."""

    TENSOR = "tensor"
    CONSTANT = "constant"
    LIST = "list"
    TUPLE = "tuple"
    DICT = "dict"


_CONTAINERS = (NodeKind.LIST, NodeKind.TUPLE, NodeKind.DICT)


class _Placeholder:
    """Marks the position of an array inside a structure descriptor."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "*"

    def __reduce__(self) -> str:
        return "PLACEHOLDER"


PLACEHOLDER = _Placeholder()


def is_tensor(node: Any) -> bool:
    """Whether ``node`` is an array leaf (concrete or traced)."""
    return isinstance(node, Array)


def node_kind(node: Any) -> NodeKind:
    """Classify a node.

    Placeholders classify as ``TENSOR`` so that a structure descriptor can
    be used anywhere an original tree is accepted as a template.

    Examples:
        >>> import jax.numpy as jnp
        >>> node_kind(jnp.ones(2))
        <NodeKind.TENSOR: 'tensor'>
        >>> node_kind({"a": 1})
        <NodeKind.DICT: 'dict'>
        >>> node_kind("abc")
        <NodeKind.CONSTANT: 'constant'>

    """
    if isinstance(node, list):
        return NodeKind.LIST
    if isinstance(node, tuple):
        return NodeKind.TUPLE
    if isinstance(node, dict):
        return NodeKind.DICT
    if isinstance(node, Array) or node is PLACEHOLDER:
        return NodeKind.TENSOR
    return NodeKind.CONSTANT


def _rebuild_tuple(node: tuple, items: list[Any]) -> tuple:
    if hasattr(node, "_fields"):
        return type(node)(*items)
    return tuple(items)


def tree_flatten(tree: Any, strict: bool = False) -> list[Array]:
    """Collect the arrays of a tree in depth-first, left-to-right order.

    Args:
        tree: Any nesting of lists, tuples, dicts, arrays and constants.
        strict: If True, any non-array leaf is an error. Used for subtrees
            that were explicitly selected for differentiation or
            vectorization.

    Returns:
        The flat list of arrays.

    Raises:
        TreeLeafError: ``strict`` is set and a non-array leaf was found.

    Examples:
        >>> import jax.numpy as jnp
        >>> x, y = jnp.ones(2), jnp.zeros(3)
        >>> flat = tree_flatten({"a": [x, 1.0], "b": (y, "label")})
        >>> len(flat)
        2
        >>> flat[0] is x
        True

    """
    flat: list[Array] = []

    def recurse(node: Any) -> None:
        kind = node_kind(node)
        if kind is NodeKind.LIST or kind is NodeKind.TUPLE:
            for item in node:
                recurse(item)
        elif kind is NodeKind.DICT:
            for item in node.values():
                recurse(item)
        elif kind is NodeKind.TENSOR:
            flat.append(node)
        elif strict:
            raise TreeLeafError(
                "[tree_flatten] The argument should contain only arrays but it "
                f"contains a leaf of type {type(node).__name__}."
            )

    recurse(tree)
    return flat


def tree_flatten_with_structure(tree: Any, strict: bool = False) -> tuple[list[Array], Any]:
    """Flatten a tree and return a reusable structure descriptor.

    Args:
        tree: Tree to flatten.
        strict: Reject non-array leaves, as in :func:`tree_flatten`.

    Returns:
        Tuple of (arrays, structure). The structure has the shape of
        ``tree`` with each array replaced by :data:`PLACEHOLDER`; constants
        are kept as they are.

    Examples:
        >>> import jax.numpy as jnp
        >>> flat, structure = tree_flatten_with_structure([jnp.ones(2), {"n": 3}])
        >>> structure
        [*, {'n': 3}]

    """
    flat: list[Array] = []

    def recurse(node: Any) -> Any:
        kind = node_kind(node)
        if kind is NodeKind.LIST:
            return [recurse(item) for item in node]
        if kind is NodeKind.TUPLE:
            return _rebuild_tuple(node, [recurse(item) for item in node])
        if kind is NodeKind.DICT:
            return {key: recurse(item) for key, item in node.items()}
        if kind is NodeKind.TENSOR:
            flat.append(node)
            return PLACEHOLDER
        if strict:
            raise TreeLeafError(
                "[tree_flatten] The argument should contain only arrays but it "
                f"contains a leaf of type {type(node).__name__}."
            )
        return node

    structure = recurse(tree)
    return flat, structure


def tree_unflatten(template: Any, tensors: Sequence[Array], offset: int = 0) -> Any:
    """Rebuild a tree from a template and a flat list of arrays.

    The template is either a structure descriptor or any tree of the right
    shape (its arrays are only used as position markers). Arrays are taken
    from ``tensors`` in order, starting at ``offset``.

    Args:
        template: Structure descriptor or original tree.
        tensors: Flat list of arrays.
        offset: Index of the first array to consume.

    Returns:
        A new tree with the template's containers and constants.

    Raises:
        ArityError: ``tensors`` runs out before the template is filled.

    Examples:
        >>> import jax.numpy as jnp
        >>> flat, structure = tree_flatten_with_structure((jnp.ones(2), "tag"))
        >>> rebuilt = tree_unflatten(structure, [jnp.zeros(2)])
        >>> rebuilt[1]
        'tag'

    """
    index = offset

    def recurse(node: Any) -> Any:
        nonlocal index
        kind = node_kind(node)
        if kind is NodeKind.LIST:
            return [recurse(item) for item in node]
        if kind is NodeKind.TUPLE:
            return _rebuild_tuple(node, [recurse(item) for item in node])
        if kind is NodeKind.DICT:
            return {key: recurse(item) for key, item in node.items()}
        if kind is NodeKind.TENSOR:
            if index >= len(tensors):
                raise ArityError(
                    f"[tree_unflatten] Not enough arrays to fill the tree: got "
                    f"{len(tensors) - offset} starting from offset {offset}."
                )
            value = tensors[index]
            index += 1
            return value
        return node

    return recurse(template)


def num_tensors(tree: Any) -> int:
    """Count the array (or placeholder) leaves of a tree."""
    count = 0

    def recurse(node: Any) -> None:
        nonlocal count
        kind = node_kind(node)
        if kind is NodeKind.LIST or kind is NodeKind.TUPLE:
            for item in node:
                recurse(item)
        elif kind is NodeKind.DICT:
            for item in node.values():
                recurse(item)
        elif kind is NodeKind.TENSOR:
            count += 1

    recurse(tree)
    return count


def _validate_subtrees(kind: NodeKind, subtrees: Sequence[Any]) -> None:
    primary = subtrees[0]
    for subtree in subtrees[1:]:
        other = node_kind(subtree)
        if other not in _CONTAINERS:
            continue
        if other is not kind or len(subtree) != len(primary):
            raise StructureMismatchError(
                "[tree_visit] Substructures have different types or sizes: "
                f"{kind.value}[{len(primary)}] vs {other.value}[{len(subtree)}]."
            )
        if kind is NodeKind.DICT and subtree.keys() != primary.keys():
            raise StructureMismatchError(
                "[tree_visit] Substructures have different keys: "
                f"{sorted(map(str, primary))} vs {sorted(map(str, subtree))}."
            )


def tree_visit(trees: Sequence[Any], fn: Callable[[tuple[Any, ...]], None]) -> None:
    """Walk several trees in lockstep and call ``fn`` on each leaf tuple.

    The first tree drives the walk. Secondary trees must have the same
    containers wherever they have a container; a leaf in a secondary tree
    acts as a prefix and is repeated for every leaf below the matching
    subtree of the first tree (this is how ``in_axes=0`` applies to all
    arguments).

    Args:
        trees: The trees to walk.
        fn: Called with a tuple holding one node per tree.

    Raises:
        StructureMismatchError: Two trees disagree in container kind, size
            or keys.

    Examples:
        >>> pairs = []
        >>> tree_visit([(1, [2, 3]), (0, None)], pairs.append)
        >>> pairs
        [(1, 0), (2, None), (3, None)]

    """

    def recurse(subtrees: tuple[Any, ...]) -> None:
        primary = subtrees[0]
        kind = node_kind(primary)
        if kind not in _CONTAINERS:
            fn(subtrees)
            return
        _validate_subtrees(kind, subtrees)
        keys = list(primary) if kind is NodeKind.DICT else range(len(primary))
        for key in keys:
            recurse(
                tuple(
                    subtree[key] if node_kind(subtree) is kind else subtree
                    for subtree in subtrees
                )
            )

    recurse(tuple(trees))


def tree_map(tree: Any, fn: Callable[[Any], Any]) -> Any:
    """Apply ``fn`` to every leaf (arrays and constants) of a tree.

    Examples:
        >>> tree_map({"a": 1, "b": (2, 3)}, lambda leaf: leaf * 10)
        {'a': 10, 'b': (20, 30)}

    """

    def recurse(node: Any) -> Any:
        kind = node_kind(node)
        if kind is NodeKind.LIST:
            return [recurse(item) for item in node]
        if kind is NodeKind.TUPLE:
            return _rebuild_tuple(node, [recurse(item) for item in node])
        if kind is NodeKind.DICT:
            return {key: recurse(item) for key, item in node.items()}
        return fn(node)

    return recurse(tree)


def tree_visit_update(tree: Any, fn: Callable[[Any], Any]) -> Any:
    """Replace every array leaf with ``fn(leaf)``, in place where possible.

    Lists and dicts are mutated, tuples are rebuilt, constants are left
    untouched. Because containers keep their identity, anything else that
    holds a reference to them observes the update.

    Returns:
        The updated root, which is a new object only if the root is a tuple
        or an array.

    """

    def recurse(node: Any) -> Any:
        kind = node_kind(node)
        if kind is NodeKind.LIST:
            for i, item in enumerate(node):
                node[i] = recurse(item)
            return node
        if kind is NodeKind.TUPLE:
            return _rebuild_tuple(node, [recurse(item) for item in node])
        if kind is NodeKind.DICT:
            for key, item in node.items():
                node[key] = recurse(item)
            return node
        if kind is NodeKind.TENSOR:
            return fn(node)
        return node

    return recurse(tree)


def tree_fill(tree: Any, tensors: Sequence[Array]) -> Any:
    """Substitute ``tensors`` for the array leaves of ``tree``, in order and in place.

    Raises:
        ArityError: The tree has more array leaves than ``tensors``.

    """
    remaining = iter(tensors)

    def take(_: Any) -> Array:
        try:
            return next(remaining)
        except StopIteration:
            raise ArityError(
                f"[tree_fill] The tree has more arrays than the {len(tensors)} provided."
            ) from None

    return tree_visit_update(tree, take)


def tree_replace(tree: Any, src: Sequence[Array], dst: Sequence[Array]) -> Any:
    """Swap, in place, every leaf that *is* ``src[i]`` for ``dst[i]``.

    Leaves that are not one of ``src`` (for instance values written into the
    tree while it was being traced) are kept.
    """
    lookup = {id(old): (old, new) for old, new in zip(src, dst)}

    def swap(leaf: Any) -> Any:
        entry = lookup.get(id(leaf))
        if entry is not None and entry[0] is leaf:
            return entry[1]
        return leaf

    return tree_visit_update(tree, swap)
