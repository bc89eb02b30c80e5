"""Structured trees of arrays.

Flattening nested lists, tuples and dicts of arrays into ordered lists and
back, packing whole calls into a single tree, and computing the signatures
compiled functions are cached under.
"""

from jax_fte.trees.calls import (
    call_flat,
    flatten_call,
    pack_call,
    unflatten_call,
    unwrap_single,
)
from jax_fte.trees.codec import (
    PLACEHOLDER,
    NodeKind,
    is_tensor,
    node_kind,
    num_tensors,
    tree_fill,
    tree_flatten,
    tree_flatten_with_structure,
    tree_map,
    tree_replace,
    tree_unflatten,
    tree_visit,
    tree_visit_update,
)
from jax_fte.trees.signature import compilation_signature

__all__ = [
    "PLACEHOLDER",
    "NodeKind",
    "is_tensor",
    "node_kind",
    "num_tensors",
    "tree_flatten",
    "tree_flatten_with_structure",
    "tree_unflatten",
    "tree_visit",
    "tree_map",
    "tree_visit_update",
    "tree_fill",
    "tree_replace",
    "pack_call",
    "flatten_call",
    "unflatten_call",
    "call_flat",
    "unwrap_single",
    "compilation_signature",
]
