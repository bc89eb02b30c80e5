"""Functions with user-defined transformation rules.

:class:`custom_function` wraps a function of structured arguments and lets
the user override how it is differentiated (``vjp`` for reverse mode,
``jvp`` for forward mode) and vectorized (``vmap``). Overrides see the
same tree structures as the function itself.

References:
    - JAX docs: https://jax.readthedocs.io/en/latest/notebooks/Custom_derivative_rules_for_Python_code.html
    - JAX source: jax/_src/custom_derivatives.py, jax/_src/custom_batching.py

"""

from __future__ import annotations

import functools
from collections.abc import Callable, Iterator
from typing import Any

import jax.numpy as jnp
from jax import Array

from jax_fte import primitives
from jax_fte.errors import ArityError, AxisError, UnsupportedArgumentError
from jax_fte.primitives import NOT_VECTORIZED
from jax_fte.transforms.checkpointing import StructureSlot
from jax_fte.trees import (
    call_flat,
    flatten_call,
    is_tensor,
    num_tensors,
    tree_flatten,
    tree_unflatten,
    tree_visit,
    unflatten_call,
    unwrap_single,
)


class custom_function:  # noqa: N801
    """Attach custom vjp, jvp and vmap rules to a function.

    Used as a decorator; the overrides are registered with the decorators
    :meth:`vjp`, :meth:`jvp` and :meth:`vmap`:

    - ``vjp(primals, cotangents, outputs, **kwargs)`` returns the
      cotangents of the positional arguments, with their structure.
    - ``jvp(primals, tangents)`` returns the output tangents. ``tangents``
      parallels ``primals`` with None where an array has no tangent.
    - ``vmap(inputs, axes)`` returns ``(outputs, out_axes)``. ``axes``
      parallels ``inputs`` with None where an array is not batched.

    A single positional argument is passed to the overrides as it is,
    several as a tuple. Keyword arguments are only supported by the vjp
    override; their arrays receive zero cotangents.

    When both a vjp and a jvp override are registered, the vjp override is
    used and the jvp override is ignored.

    Examples:
        >>> import jax
        >>> import jax.numpy as jnp
        >>> @custom_function
        ... def clipped(x):
        ...     return jnp.clip(x, -1.0, 1.0)
        >>> @clipped.vjp
        ... def clipped_vjp(primals, cotangents, outputs):
        ...     return cotangents
        >>> float(jax.grad(lambda x: clipped(x))(jnp.array(5.0)))
        1.0

    """

    def __init__(self, fun: Callable[..., Any]) -> None:
        functools.update_wrapper(self, fun)
        self.fun: Callable[..., Any] | None = fun
        self.fun_vjp: Callable[..., Any] | None = None
        self.fun_jvp: Callable[..., Any] | None = None
        self.fun_vmap: Callable[..., Any] | None = None

    def vjp(self, fun_vjp: Callable[..., Any]) -> Callable[..., Any]:
        """Register the reverse-mode rule."""
        self.fun_vjp = fun_vjp
        return fun_vjp

    def jvp(self, fun_jvp: Callable[..., Any]) -> Callable[..., Any]:
        """Register the forward-mode rule."""
        self.fun_jvp = fun_jvp
        return fun_jvp

    def vmap(self, fun_vmap: Callable[..., Any]) -> Callable[..., Any]:
        """Register the vectorization rule."""
        self.fun_vmap = fun_vmap
        return fun_vmap

    def references(self) -> Iterator[Callable[..., Any]]:
        """Yield every callable this wrapper holds on to."""
        for fun in (self.fun, self.fun_vjp, self.fun_jvp, self.fun_vmap):
            if fun is not None:
                yield fun

    def clear(self) -> None:
        """Release the wrapped function and all overrides.

        Breaks reference cycles between the wrapper and overrides that
        close over it. The wrapper is unusable afterwards.
        """
        self.fun = None
        self.fun_vjp = None
        self.fun_jvp = None
        self.fun_vmap = None
        self.__dict__.pop("__wrapped__", None)

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        if self.fun is None:
            raise TypeError("[custom_function] The function was released by clear().")
        if self.fun_vjp is None and self.fun_jvp is None and self.fun_vmap is None:
            return self.fun(*args, **kwargs)

        fun, fun_vjp, fun_jvp, fun_vmap = self.fun, self.fun_vjp, self.fun_jvp, self.fun_vmap
        tensors, call_structure = flatten_call(args, kwargs)
        args_structure = call_structure[0]
        num_positional = num_tensors(args_structure)
        slot = StructureSlot()

        def forward(flat: list[Array]) -> list[Array]:
            outputs, structure = call_flat(fun, call_structure, flat)
            slot.structure = structure
            return outputs

        def vjp_rule(primals: list[Array], cotangents: list[Array], outputs: list[Array]) -> list[Array]:
            call_args, call_kwargs = unflatten_call(call_structure, primals)
            grads = fun_vjp(
                unwrap_single(call_args),
                tree_unflatten(slot.structure, cotangents),
                tree_unflatten(slot.structure, outputs),
                **call_kwargs,
            )
            flat_grads = tree_flatten(grads, strict=True)
            if len(flat_grads) != num_positional:
                raise ArityError(
                    f"[custom vjp] The vjp function returned {len(flat_grads)} "
                    f"arrays but the positional arguments hold {num_positional}."
                )
            return flat_grads + [jnp.zeros_like(x) for x in primals[num_positional:]]

        def jvp_rule(primals: list[Array], tangents: list[Array], argnums: list[int]) -> list[Array]:
            if kwargs:
                raise UnsupportedArgumentError(
                    "[custom jvp] Function should only accept positional arguments"
                )
            full_tangents: list[Any] = [None] * len(primals)
            for i, tangent in zip(argnums, tangents):
                full_tangents[i] = tangent
            out = fun_jvp(
                unwrap_single(tree_unflatten(args_structure, primals)),
                unwrap_single(tree_unflatten(args_structure, full_tangents)),
            )
            return tree_flatten(out, strict=False)

        def vmap_rule(inputs: list[Array], axes: list[int]) -> tuple[list[Array], list[int]]:
            if kwargs:
                raise UnsupportedArgumentError(
                    "[custom vmap] Function should only accept positional arguments"
                )
            axis_leaves = [None if axis == NOT_VECTORIZED else axis for axis in axes]
            result = fun_vmap(
                unwrap_single(tree_unflatten(args_structure, inputs)),
                unwrap_single(tree_unflatten(args_structure, axis_leaves)),
            )
            if not isinstance(result, (tuple, list)) or len(result) != 2:
                raise ArityError(
                    "[custom vmap] Vmap function should return a tuple with 2 items."
                )
            outputs: list[Array] = []
            out_axes: list[int] = []

            def collect(pair: tuple[Any, Any]) -> None:
                x, axis = pair
                if not is_tensor(x):
                    return
                if axis is None:
                    axis = NOT_VECTORIZED
                elif isinstance(axis, bool) or not isinstance(axis, int) or axis < 0:
                    raise AxisError(
                        "[custom vmap] Output axes should be None or non-negative "
                        f"integers but got {axis!r}."
                    )
                outputs.append(x)
                out_axes.append(axis)

            tree_visit(list(result), collect)
            return outputs, out_axes

        flat_fun = primitives.custom_function(
            forward,
            fun_vjp=vjp_rule if fun_vjp is not None else None,
            fun_jvp=jvp_rule if fun_jvp is not None else None,
            fun_vmap=vmap_rule if fun_vmap is not None else None,
        )
        outputs = flat_fun(tensors)
        return tree_unflatten(slot.structure, outputs)
