"""Tests for jax_fte.transforms.core module."""

from __future__ import annotations

import jax.numpy as jnp
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from jax_fte.autodiff import grad
from jax_fte.errors import AxisError
from jax_fte.primitives import NOT_VECTORIZED
from jax_fte.transforms import async_eval, axes_to_flat_tree, eval, vmap


class TestEval:
    """Tests for eval and async_eval."""

    def test_eval_trees(self):
        tree = {"w": jnp.ones(3) * 2, "step": 1, "name": "layer"}
        assert eval(tree, [jnp.zeros(2)]) is None
        assert tree["w"].tolist() == [2.0, 2.0, 2.0]

    def test_eval_no_arrays(self):
        eval(1, "two", None)

    def test_async_eval(self):
        x = jnp.arange(4.0)
        async_eval([x])
        assert float(jnp.sum(x)) == 6.0


class TestAxesToFlatTree:
    """Tests for axes_to_flat_tree."""

    def test_broadcast_int(self):
        tree = (jnp.ones((2, 3)), [jnp.ones(4)])
        assert axes_to_flat_tree(tree, 0) == [0, 0]

    def test_none_not_vectorized(self):
        assert axes_to_flat_tree((jnp.ones(2), jnp.ones(2)), (0, None)) == [0, NOT_VECTORIZED]

    def test_negative_input_axis(self):
        assert axes_to_flat_tree(jnp.ones((2, 3, 4)), -1) == [2]

    def test_negative_output_axis(self):
        assert axes_to_flat_tree(jnp.ones((2, 3)), -1, output_axes=True) == [2]

    def test_output_axis_may_equal_ndim(self):
        assert axes_to_flat_tree(jnp.ones(3), 1, output_axes=True) == [1]

    def test_out_of_bounds(self):
        with pytest.raises(AxisError, match="out of bounds"):
            axes_to_flat_tree(jnp.ones((2, 3)), 2)

    def test_negative_out_of_bounds(self):
        with pytest.raises(AxisError):
            axes_to_flat_tree(jnp.ones(3), -2)

    def test_single_tensor_one_tuple(self):
        assert axes_to_flat_tree(jnp.ones(3), (0,)) == [0]

    def test_one_tuple_rejected_for_trees(self):
        with pytest.raises(AxisError, match="int or None"):
            axes_to_flat_tree((jnp.ones(3),), ((0,),))

    def test_structure_mismatch(self):
        with pytest.raises(AxisError):
            axes_to_flat_tree((jnp.ones(3), jnp.ones(3)), (0,))

    def test_non_tensor_leaf(self):
        with pytest.raises(AxisError, match="only arrays"):
            axes_to_flat_tree((jnp.ones(3), 2), 0)

    def test_bool_axis_rejected(self):
        with pytest.raises(AxisError):
            axes_to_flat_tree(jnp.ones(3), True)

    def test_dict_axes(self):
        tree = {"a": jnp.ones((2, 3)), "b": jnp.ones(5)}
        assert axes_to_flat_tree(tree, {"a": 1, "b": None}) == [1, NOT_VECTORIZED]

    @given(st.integers(min_value=1, max_value=4), st.data())
    @settings(max_examples=20)
    def test_resolved_axes_in_range(self, ndim, data):
        axis = data.draw(st.integers(min_value=-ndim, max_value=ndim - 1))
        (resolved,) = axes_to_flat_tree(jnp.ones((1,) * ndim), axis)
        assert 0 <= resolved < ndim


class TestVmap:
    """Tests for vmap."""

    def test_basic(self):
        result = vmap(lambda x: x * 2)(jnp.arange(3.0))
        assert result.tolist() == [0.0, 2.0, 4.0]

    def test_unbatched_argument(self):
        dot = vmap(lambda a, b: jnp.sum(a * b), in_axes=(0, None))
        assert dot(jnp.ones((3, 2)), jnp.array([1.0, 2.0])).tolist() == [3.0, 3.0, 3.0]

    def test_tree_input_and_output(self):
        def swap(p):
            return {"x": p["y"], "y": p["x"]}

        out = vmap(swap)({"x": jnp.zeros((4, 2)), "y": jnp.ones((4, 1))})
        assert out["x"].shape == (4, 1)
        assert out["y"].shape == (4, 2)

    def test_dict_in_axes(self):
        def f(p):
            return p["a"] + p["b"]

        out = vmap(f, in_axes={"a": 1, "b": None})({"a": jnp.ones((2, 5)), "b": jnp.ones(2)})
        assert out.shape == (5, 2)

    def test_out_axes(self):
        out = vmap(lambda x: x * 2, in_axes=0, out_axes=1)(jnp.ones((3, 2)))
        assert out.shape == (2, 3)

    def test_negative_in_axis(self):
        out = vmap(jnp.sum, in_axes=-1)(jnp.ones((2, 3)))
        assert out.shape == (3,)
        assert out.tolist() == [2.0, 2.0, 2.0]

    def test_tuple_outputs(self):
        out = vmap(lambda x: (x, x + 1))(jnp.arange(2.0))
        assert isinstance(out, tuple)
        assert out[1].tolist() == [1.0, 2.0]

    def test_constant_argument_rejected(self):
        with pytest.raises(AxisError):
            vmap(lambda x, n: x * n)(jnp.ones(3), 2)

    def test_bad_axis(self):
        with pytest.raises(AxisError):
            vmap(lambda x: x, in_axes=3)(jnp.ones(3))

    def test_composes_with_grad(self):
        per_example = vmap(grad(lambda x: x**2))
        assert per_example(jnp.array([1.0, 2.0, 3.0])).tolist() == [2.0, 4.0, 6.0]

    def test_nested(self):
        out = vmap(vmap(lambda x: x + 1))(jnp.zeros((2, 3)))
        assert out.shape == (2, 3)
        assert float(jnp.sum(out)) == 6.0

    def test_preserves_name(self):
        def per_example(x):
            return x

        assert vmap(per_example).__name__ == "per_example"
