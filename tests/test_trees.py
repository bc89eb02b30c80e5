"""Tests for jax_fte.trees module."""

from __future__ import annotations

from collections import namedtuple

import jax.numpy as jnp
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from jax_fte.errors import ArityError, StructureMismatchError, TreeLeafError
from jax_fte.trees import (
    PLACEHOLDER,
    NodeKind,
    compilation_signature,
    flatten_call,
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
    unflatten_call,
    unwrap_single,
)

Pair = namedtuple("Pair", ["first", "second"])


def _trees():
    """Nested lists, tuples and dicts of small arrays and constants."""
    leaves = st.one_of(
        st.floats(min_value=-10.0, max_value=10.0).map(lambda v: jnp.array(v)),
        st.integers(min_value=-5, max_value=5),
        st.sampled_from(["a", "b", None]),
    )
    return st.recursive(
        leaves,
        lambda children: st.one_of(
            st.lists(children, max_size=3),
            st.lists(children, max_size=3).map(tuple),
            st.dictionaries(st.sampled_from(["x", "y", "z"]), children, max_size=3),
        ),
        max_leaves=8,
    )


class TestNodeKind:
    """Tests for node classification."""

    def test_containers(self):
        assert node_kind([1]) is NodeKind.LIST
        assert node_kind((1,)) is NodeKind.TUPLE
        assert node_kind({"a": 1}) is NodeKind.DICT

    def test_leaves(self):
        assert node_kind(jnp.ones(2)) is NodeKind.TENSOR
        assert node_kind(PLACEHOLDER) is NodeKind.TENSOR
        assert node_kind(3.0) is NodeKind.CONSTANT
        assert node_kind(None) is NodeKind.CONSTANT

    def test_namedtuple_is_tuple(self):
        assert node_kind(Pair(1, 2)) is NodeKind.TUPLE


class TestTreeFlatten:
    """Tests for tree_flatten."""

    def test_depth_first_order(self):
        a, b, c = jnp.array(1.0), jnp.array(2.0), jnp.array(3.0)
        flat = tree_flatten([a, {"k": (b, 4)}, c])
        assert flat[0] is a
        assert flat[1] is b
        assert flat[2] is c

    def test_dict_insertion_order(self):
        a, b = jnp.array(1.0), jnp.array(2.0)
        flat = tree_flatten({"z": a, "a": b})
        assert flat[0] is a

    def test_constants_skipped(self):
        assert tree_flatten([1, "s", None, 2.5]) == []

    def test_strict_rejects_constants(self):
        with pytest.raises(TreeLeafError, match="tree_flatten"):
            tree_flatten([jnp.ones(1), 3], strict=True)

    def test_strict_error_is_value_error(self):
        with pytest.raises(ValueError):
            tree_flatten("leaf", strict=True)

    def test_single_array(self):
        x = jnp.ones(3)
        assert tree_flatten(x)[0] is x


class TestTreeUnflatten:
    """Tests for tree_unflatten and structure descriptors."""

    def test_structure_placeholders(self):
        _, structure = tree_flatten_with_structure({"w": jnp.ones(2), "n": 3})
        assert structure == {"w": PLACEHOLDER, "n": 3}

    def test_rebuild_from_structure(self):
        flat, structure = tree_flatten_with_structure([jnp.ones(2), ("tag", jnp.zeros(1))])
        rebuilt = tree_unflatten(structure, [flat[1], flat[0]])
        assert rebuilt[0] is flat[1]
        assert rebuilt[1][0] == "tag"
        assert rebuilt[1][1] is flat[0]

    def test_offset(self):
        x, y = jnp.array(1.0), jnp.array(2.0)
        rebuilt = tree_unflatten([PLACEHOLDER], [x, y], offset=1)
        assert rebuilt[0] is y

    def test_not_enough_arrays(self):
        with pytest.raises(ArityError):
            tree_unflatten([PLACEHOLDER, PLACEHOLDER], [jnp.ones(1)])

    def test_namedtuple_preserved(self):
        flat, structure = tree_flatten_with_structure(Pair(jnp.ones(1), 5))
        rebuilt = tree_unflatten(structure, flat)
        assert isinstance(rebuilt, Pair)
        assert rebuilt.second == 5

    @given(_trees())
    @settings(max_examples=20, deadline=None)
    def test_round_trip_preserves_leaves(self, tree):
        flat, structure = tree_flatten_with_structure(tree)
        rebuilt = tree_unflatten(structure, flat)
        rebuilt_flat = tree_flatten(rebuilt)
        assert len(rebuilt_flat) == len(flat)
        assert all(a is b for a, b in zip(rebuilt_flat, flat))
        assert num_tensors(structure) == len(flat)
        assert tree_map(rebuilt, type) == tree_map(tree, type)


class TestTreeVisit:
    """Tests for tree_visit."""

    def test_prefix_broadcast(self):
        seen = []
        tree_visit([(1, [2, 3]), (0, None)], seen.append)
        assert seen == [(1, 0), (2, None), (3, None)]

    def test_scalar_secondary(self):
        seen = []
        tree_visit([{"a": 1, "b": 2}, 7], seen.append)
        assert seen == [(1, 7), (2, 7)]

    def test_size_mismatch(self):
        with pytest.raises(StructureMismatchError):
            tree_visit([(1, 2), (0,)], lambda pair: None)

    def test_kind_mismatch(self):
        with pytest.raises(StructureMismatchError):
            tree_visit([(1, 2), [0, 0]], lambda pair: None)

    def test_key_mismatch(self):
        with pytest.raises(StructureMismatchError):
            tree_visit([{"a": 1}, {"b": 0}], lambda pair: None)


class TestTreeUpdate:
    """Tests for in-place updates."""

    def test_visit_update_mutates_lists_and_dicts(self):
        inner = [jnp.array(1.0)]
        tree = {"x": inner, "n": 3}
        tree_visit_update(tree, lambda x: x + 1)
        assert tree["x"] is inner
        assert float(inner[0]) == 2.0
        assert tree["n"] == 3

    def test_visit_update_rebuilds_tuples(self):
        tree = [(jnp.array(1.0), 2)]
        tree_visit_update(tree, lambda x: x * 10)
        assert float(tree[0][0]) == 10.0
        assert tree[0][1] == 2

    def test_fill(self):
        tree = [jnp.zeros(1), {"b": jnp.zeros(1)}]
        a, b = jnp.ones(1), jnp.ones(1) * 2
        tree_fill(tree, [a, b])
        assert tree[0] is a
        assert tree[1]["b"] is b

    def test_fill_too_few(self):
        with pytest.raises(ArityError):
            tree_fill([jnp.zeros(1), jnp.zeros(1)], [jnp.ones(1)])

    def test_replace_only_swaps_identical(self):
        src = [jnp.array(1.0), jnp.array(2.0)]
        dst = [jnp.array(10.0), jnp.array(20.0)]
        written = jnp.array(5.0)
        tree = [src[0], written]
        tree_replace(tree, src, dst)
        assert tree[0] is dst[0]
        assert tree[1] is written


class TestCalls:
    """Tests for call packing."""

    def test_flatten_call_order(self):
        a, b = jnp.array(1.0), jnp.array(2.0)
        flat, structure = flatten_call((a, 3), {"y": b})
        assert flat[0] is a
        assert flat[1] is b
        args, kwargs = unflatten_call(structure, flat)
        assert args[0] is a
        assert args[1] == 3
        assert kwargs["y"] is b

    def test_unwrap_single(self):
        assert unwrap_single((5,)) == 5
        assert unwrap_single((5, 6)) == (5, 6)


class TestCompilationSignature:
    """Tests for compilation_signature."""

    def test_array_values_ignored(self):
        sig_a, _, _ = compilation_signature((jnp.ones(2),), {})
        sig_b, _, _ = compilation_signature((jnp.zeros(5),), {})
        assert sig_a == sig_b

    def test_constants_distinguish(self):
        sig_a, _, _ = compilation_signature((1,), {})
        sig_b, _, _ = compilation_signature((2,), {})
        assert sig_a != sig_b

    def test_kinds_distinguish(self):
        signatures = {
            compilation_signature((value,), {})[0]
            for value in (1, True, 1.0, "1", None)
        }
        assert len(signatures) == 5

    def test_nesting_distinguishes(self):
        sig_a, _, _ = compilation_signature(([1, 2], 3), {})
        sig_b, _, _ = compilation_signature(([1], 2, 3), {})
        assert sig_a != sig_b

    def test_negative_int_does_not_collide(self):
        sig_a, _, _ = compilation_signature((-1,), {})
        sig_b, _, _ = compilation_signature(((1 << 64) - 1,), {})
        assert sig_a != sig_b

    def test_positional_then_keyword_arrays(self):
        a, b = jnp.array(1.0), jnp.array(2.0)
        _, tensors, num_args = compilation_signature((a,), {"k": b})
        assert tensors[0] is a
        assert tensors[1] is b
        assert num_args == 1

    def test_unsupported_leaf(self):
        with pytest.raises(TreeLeafError, match="compile"):
            compilation_signature((object(),), {})

    @given(st.integers(min_value=-(1 << 62), max_value=1 << 62))
    @settings(max_examples=20)
    def test_int_signature_deterministic(self, value):
        assert compilation_signature((value,), {})[0] == compilation_signature((value,), {})[0]
