"""Evaluation and vectorization of functions over structured arguments.

``vmap`` accepts the same axis specifications as ``jax.vmap`` for the
common cases: one axis for everything, ``None`` for an unbatched argument,
or a tree of axes parallel to the arguments (a leaf of that tree applies to
the whole subtree below it).

References:
    - JAX docs: https://jax.readthedocs.io/en/latest/automatic-vectorization.html
    - JAX source: jax/_src/api.py (vmap, _mapped_axis_size)

"""

from __future__ import annotations

import functools
from collections.abc import Callable
from typing import Any

from jax import Array

from jax_fte import primitives
from jax_fte.errors import AxisError, StructureMismatchError
from jax_fte.primitives import NOT_VECTORIZED
from jax_fte.trees import is_tensor, tree_flatten, tree_unflatten, tree_visit, unwrap_single

AxisSpec = Any


def eval(*trees: Any) -> None:  # noqa: A001
    """Compute every array found in ``trees``, blocking until done.

    Non-array leaves are ignored, so whole parameter dicts or optimizer
    states can be passed as they are.

    Examples:
        >>> import jax.numpy as jnp
        >>> eval({"w": jnp.ones(2), "step": 3}, [jnp.zeros(1)])

    """
    primitives.evaluate(tree_flatten(list(trees), strict=False))


def async_eval(*trees: Any) -> None:
    """Schedule evaluation of every array found in ``trees`` and return."""
    primitives.async_evaluate(tree_flatten(list(trees), strict=False))


def _resolve_axis(x: Any, axis: Any, output_axes: bool) -> int:
    if not is_tensor(x):
        raise AxisError(
            "[vmap] The arguments should contain only arrays but found a leaf "
            f"of type {type(x).__name__}."
        )
    if axis is None:
        return NOT_VECTORIZED
    if isinstance(axis, bool) or not isinstance(axis, int):
        raise AxisError("[vmap] axis must be int or None.")
    # Output axes index the result, which has the extra vectorized dimension.
    limit = x.ndim + (1 if output_axes else 0)
    resolved = axis + limit if axis < 0 else axis
    if resolved < 0 or resolved >= limit:
        raise AxisError(
            f"[vmap] Axis {axis} is out of bounds for an array with {limit} dimensions."
        )
    return resolved


def axes_to_flat_tree(tree: Any, axes: AxisSpec, output_axes: bool = False) -> list[int]:
    """Resolve an axis specification to one axis per array of ``tree``.

    Args:
        tree: Arguments (or outputs) being vectorized.
        axes: An int, ``None``, or a tree of those parallel to ``tree``. A
            one-element sequence is accepted when ``tree`` is a single array.
        output_axes: Resolve against the vectorized result, which has one
            more dimension than each per-example array.

    Returns:
        Non-negative axes in flattening order, :data:`NOT_VECTORIZED` for
        unbatched arrays.

    Raises:
        AxisError: Axis out of bounds, malformed specification, or a
            non-array leaf in ``tree``.

    Examples:
        >>> import jax.numpy as jnp
        >>> axes_to_flat_tree((jnp.ones((2, 3)), jnp.ones(4)), (-1, None))
        [1, -1]
        >>> axes_to_flat_tree(jnp.ones(3), -1, output_axes=True)
        [1]

    """
    flat_axes: list[int] = []
    single_tensor = is_tensor(tree)

    def visit(pair: tuple[Any, Any]) -> None:
        x, axis = pair
        if isinstance(axis, (tuple, list)):
            if not (single_tensor and len(axis) == 1):
                raise AxisError("[vmap] axis must be int or None.")
            axis = axis[0]
        flat_axes.append(_resolve_axis(x, axis, output_axes))

    try:
        tree_visit([tree, axes], visit)
    except StructureMismatchError as e:
        raise AxisError(
            f"[vmap] The axis specification does not match the arguments. {e}"
        ) from e
    return flat_axes


def vmap(
    fun: Callable[..., Any],
    in_axes: AxisSpec = 0,
    out_axes: AxisSpec = 0,
) -> Callable[..., Any]:
    """Vectorize ``fun`` over an axis of its (positional) arguments.

    Args:
        fun: Function of arrays or trees of arrays.
        in_axes: Input axis specification, see :func:`axes_to_flat_tree`.
            With several arguments a sequence gives one entry per argument.
        out_axes: Where the vectorized axis goes in each output.

    Returns:
        Vectorized version of ``fun`` returning outputs with the same
        structure as ``fun``'s.

    Examples:
        >>> import jax.numpy as jnp
        >>> dot = vmap(lambda a, b: jnp.sum(a * b), in_axes=(0, None))
        >>> dot(jnp.ones((3, 2)), jnp.array([1.0, 2.0])).tolist()
        [3.0, 3.0, 3.0]

        >>> swap = vmap(lambda p: {"x": p["y"], "y": p["x"]})
        >>> out = swap({"x": jnp.zeros((4, 2)), "y": jnp.ones((4, 1))})
        >>> out["x"].shape
        (4, 1)

    """

    @functools.wraps(fun)
    def vmapped(*args: Any) -> Any:
        flat_in_axes = axes_to_flat_tree(unwrap_single(args), in_axes, output_axes=False)
        inputs = tree_flatten(args, strict=True)

        # The raw return value, kept to resolve out_axes and as a template.
        py_outputs = None

        def traced(a: list[Array]) -> list[Array]:
            nonlocal py_outputs
            py_outputs = fun(*tree_unflatten(args, a))
            return tree_flatten(py_outputs, strict=True)

        trace_inputs, trace_outputs = primitives.trace_vmap(traced, inputs, flat_in_axes)
        flat_out_axes = axes_to_flat_tree(py_outputs, out_axes, output_axes=True)
        outputs = primitives.replace_vmap(
            inputs, trace_inputs, trace_outputs, flat_in_axes, flat_out_axes
        )
        return tree_unflatten(py_outputs, outputs)

    return vmapped
