"""Automatic differentiation over structured arguments.

``grad`` and ``value_and_grad`` accept functions of arbitrarily nested
lists, tuples and dicts of arrays. Each call flattens the arguments,
differentiates the flat function with the ``value_and_grad`` primitive and
puts the gradients back into the shape of the selected arguments.

``jvp`` and ``vjp`` expose forward and reverse mode directly on lists of
arrays.

References:
    - JAX autodiff cookbook: https://jax.readthedocs.io/en/latest/advanced-autodiff.html
    - JAX source: jax/_src/api.py (grad, value_and_grad, jvp, vjp)

"""

from __future__ import annotations

import functools
import itertools
from collections.abc import Callable, Iterable, Sequence
from typing import Any

from jax import Array

from jax_fte import primitives
from jax_fte.autodiff.argnums import check_call_selection, resolve_argnums_argnames
from jax_fte.errors import ReturnContractError
from jax_fte.trees import is_tensor, tree_fill, tree_flatten, tree_replace, tree_unflatten


def _check_return_value(value: Any, tag: str, scalar_func_only: bool) -> None:
    if is_tensor(value):
        return
    if scalar_func_only:
        raise ReturnContractError(
            f"{tag} The return value of the function whose gradient we want to "
            f"compute should be a scalar array; but {type(value).__name__} was returned."
        )
    if not isinstance(value, (tuple, list)):
        raise ReturnContractError(
            f"{tag} The return value of the function whose gradient we want to "
            "compute should be either a scalar array or a tuple with the first value "
            "being a scalar array (Union[array, tuple[array, Any, ...]]); but "
            f"{type(value).__name__} was returned."
        )
    if len(value) == 0:
        raise ReturnContractError(
            f"{tag} The return value of the function whose gradient we want to "
            "compute should be either a scalar array or a non-empty tuple. The first "
            "value should be a scalar array and the rest can be anything. Instead, "
            "we got an empty tuple."
        )
    if not is_tensor(value[0]):
        raise ReturnContractError(
            f"{tag} The return value of the function whose gradient we want to "
            "compute should be either a scalar array or a tuple with the first value "
            "being a scalar array (Union[array, tuple[array, Any, ...]]); but it was a "
            f"tuple with the first value being of type {type(value[0]).__name__}."
        )


def _value_and_grad(
    fun: Callable[..., Any],
    argnums: tuple[int, ...],
    argnames: frozenset[str],
    tag: str,
    scalar_func_only: bool,
) -> Callable[..., tuple[Any, Any]]:
    def call(*args: Any, **kwargs: Any) -> tuple[Any, Any]:
        check_call_selection(argnums, argnames, args, kwargs, tag)

        # Flatten everything, remembering where each selected argument's
        # arrays start so gradients can be handed back per argument.
        arrays: list[Array] = []
        counts = [0]
        gradient_indices: list[int] = []
        selected = iter(argnums)
        next_selected = next(selected, None)
        for i, arg in enumerate(args):
            needs_grad = i == next_selected
            flat = tree_flatten(arg, strict=needs_grad)
            if needs_grad:
                gradient_indices.extend(range(len(arrays), len(arrays) + len(flat)))
                counts.append(len(flat))
                next_selected = next(selected, None)
            arrays.extend(flat)
        for name, value in kwargs.items():
            needs_grad = name in argnames
            flat = tree_flatten(value, strict=needs_grad)
            if needs_grad:
                gradient_indices.extend(range(len(arrays), len(arrays) + len(flat)))
                counts.append(len(flat))
            arrays.extend(flat)
        counts = list(itertools.accumulate(counts))

        # Holds the raw return value so its non-array parts can be rebuilt.
        value_out = None

        def traced(inputs: list[Array]) -> list[Array]:
            nonlocal value_out
            tree = [args, kwargs]
            tree_fill(tree, inputs)
            try:
                value_out = fun(*tree[0], **tree[1])
            finally:
                # Slots the function overwrote keep their new value.
                tree_replace(tree, inputs, arrays)
            _check_return_value(value_out, tag, scalar_func_only)
            return tree_flatten(value_out, strict=False)

        values, gradients = primitives.value_and_grad(traced, gradient_indices)(arrays)

        if len(argnums) == 1:
            positional_grads = tree_unflatten(args[argnums[0]], gradients, counts[0])
        elif len(argnums) > 1:
            positional_grads = tuple(
                tree_unflatten(args[index], gradients, counts[i])
                for i, index in enumerate(argnums)
            )
        else:
            positional_grads = None

        if not argnames:
            grads = positional_grads
        else:
            keyword_grads = {}
            i = len(argnums)
            for name, value in kwargs.items():
                if name in argnames:
                    keyword_grads[name] = tree_unflatten(value, gradients, counts[i])
                    i += 1
            grads = (positional_grads, keyword_grads)

        return tree_unflatten(value_out, values), grads

    return call


def value_and_grad(
    fun: Callable[..., Any],
    argnums: int | Sequence[int] | None = None,
    argnames: str | Iterable[str] = (),
) -> Callable[..., tuple[Any, Any]]:
    """Return a function computing the value and gradient of ``fun``.

    ``fun`` must return either a scalar array or a tuple whose first element
    is a scalar array (the loss); the remaining elements can be anything and
    are passed through undifferentiated.

    Args:
        fun: Function of arrays or trees of arrays.
        argnums: Positional argument(s) to differentiate. Defaults to ``0``
            unless ``argnames`` is given.
        argnames: Keyword argument(s) to differentiate.

    Returns:
        Function returning ``(value, grads)``. ``grads`` has the structure of
        the selected argument when a single one is selected, is a tuple of
        such trees for several, and is ``(positional, {name: grad})`` as soon
        as a keyword argument is selected.

    Raises:
        InvalidArgumentError: Malformed selection.

    Examples:
        >>> import jax.numpy as jnp
        >>> def loss(params, x):
        ...     return jnp.sum(params["w"] * x) + params["b"]
        >>> params = {"w": jnp.array([1.0, 2.0]), "b": jnp.array(0.5)}
        >>> value, grads = value_and_grad(loss)(params, jnp.array([3.0, 4.0]))
        >>> float(value)
        11.5
        >>> grads["w"].tolist()
        [3.0, 4.0]

        >>> def lasso(w, x):
        ...     mse = jnp.mean((w * x) ** 2)
        ...     return mse, {"mse": mse}
        >>> (loss_value, aux), g = value_and_grad(lasso)(jnp.ones(2), jnp.ones(2))
        >>> float(aux["mse"])
        1.0

    """
    indices, names = resolve_argnums_argnames(argnums, argnames, "[value_and_grad]")
    return functools.wraps(fun)(
        _value_and_grad(fun, indices, names, "[value_and_grad]", scalar_func_only=False)
    )


def grad(
    fun: Callable[..., Array],
    argnums: int | Sequence[int] | None = None,
    argnames: str | Iterable[str] = (),
) -> Callable[..., Any]:
    """Return a function computing the gradient of a scalar-valued ``fun``.

    Args:
        fun: Function of arrays or trees of arrays returning a scalar array.
        argnums: Positional argument(s) to differentiate. Defaults to ``0``
            unless ``argnames`` is given.
        argnames: Keyword argument(s) to differentiate.

    Returns:
        Function with the same arguments as ``fun`` returning the
        gradient(s), packaged as in :func:`value_and_grad`.

    Examples:
        >>> import jax.numpy as jnp
        >>> def f(x, y):
        ...     return jnp.sum(x) * y
        >>> dx, dy = grad(f, argnums=[0, 1])(jnp.array([1.0, 2.0]), jnp.array(3.0))
        >>> dx.tolist(), float(dy)
        ([3.0, 3.0], 3.0)

    """
    indices, names = resolve_argnums_argnames(argnums, argnames, "[grad]")
    fn = _value_and_grad(fun, indices, names, "[grad]", scalar_func_only=True)

    @functools.wraps(fun)
    def grad_fn(*args: Any, **kwargs: Any) -> Any:
        return fn(*args, **kwargs)[1]

    return grad_fn


def _as_array_list(out: Any, tag: str) -> list[Array]:
    if is_tensor(out):
        return [out]
    if isinstance(out, (list, tuple)) and all(is_tensor(x) for x in out):
        return list(out)
    raise ReturnContractError(
        f"{tag} The function should return an array or a list of arrays but "
        f"returned {type(out).__name__}."
    )


def jvp(
    fun: Callable[..., Any],
    primals: Sequence[Array],
    tangents: Sequence[Array],
) -> tuple[list[Array], list[Array]]:
    """Compute a Jacobian-vector product.

    Args:
        fun: Function taking ``len(primals)`` arrays and returning an array
            or a list of arrays.
        primals: Point at which the Jacobian is evaluated.
        tangents: One tangent per primal, same shapes and dtypes.

    Returns:
        Tuple of (outputs, jvps), both lists with one entry per output.

    Examples:
        >>> import jax.numpy as jnp
        >>> outs, jvps = jvp(lambda x: x ** 2, [jnp.array(3.0)], [jnp.array(1.0)])
        >>> float(outs[0]), float(jvps[0])
        (9.0, 6.0)

    """
    return primitives.jvp(
        lambda xs: _as_array_list(fun(*xs), "[jvp]"), list(primals), list(tangents)
    )


def vjp(
    fun: Callable[..., Any],
    primals: Sequence[Array],
    cotangents: Sequence[Array],
) -> tuple[list[Array], list[Array]]:
    """Compute a vector-Jacobian product.

    Args:
        fun: Function taking ``len(primals)`` arrays and returning an array
            or a list of arrays.
        primals: Point at which the Jacobian is evaluated.
        cotangents: One cotangent per output of ``fun``.

    Returns:
        Tuple of (outputs, vjps): ``vjps`` holds one entry per primal.

    Examples:
        >>> import jax.numpy as jnp
        >>> outs, vjps = vjp(lambda x, y: x * y, [jnp.array(2.0), jnp.array(5.0)],
        ...                  [jnp.array(1.0)])
        >>> [float(v) for v in vjps]
        [5.0, 2.0]

    """
    return primitives.vjp(
        lambda xs: _as_array_list(fun(*xs), "[vjp]"), list(primals), list(cotangents)
    )
