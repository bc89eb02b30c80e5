"""Compiled functions over structured arguments.

A :class:`CompiledFunction` computes a signature for every call (the tree
shape plus the values of all non-array leaves) and looks up a cached trace
for it. The user function only runs when a trace is recorded; on a cache
hit the structure of the result is rebuilt from the structure recorded at
trace time.

External state that the function reads or updates (model parameters,
optimizer state, random keys) is declared through ``inputs`` and
``outputs`` so that it is threaded through the trace instead of being
baked in as a constant.

References:
    - JAX docs: https://jax.readthedocs.io/en/latest/jit-compilation.html
    - JAX source: jax/_src/pjit.py

"""

from __future__ import annotations

import functools
import logging
import weakref
from collections.abc import Callable
from typing import Any

from jax import Array

from jax_fte import primitives
from jax_fte.primitives import RuntimeContext, get_context, next_function_id
from jax_fte.trees import (
    compilation_signature,
    num_tensors,
    tree_fill,
    tree_flatten,
    tree_flatten_with_structure,
    tree_replace,
    tree_unflatten,
)

logger = logging.getLogger(__name__)


class CompiledFunction:
    """Callable wrapper caching one trace per call signature.

    Attributes:
        fun: The wrapped function.
        inputs: Tree of captured state read by ``fun``, or None.
        outputs: Tree of captured state written by ``fun``, or None. It is
            updated in place after every call.
        shapeless: Keep this function's traces apart from the shaped ones.
        fun_id: Identity the cached traces are registered under.

    """

    def __init__(
        self,
        fun: Callable[..., Any],
        inputs: Any = None,
        outputs: Any = None,
        shapeless: bool = False,
        context: RuntimeContext | None = None,
    ) -> None:
        functools.update_wrapper(self, fun)
        self.fun = fun
        self.inputs = inputs
        self.outputs = outputs
        self.shapeless = shapeless
        self.fun_id = next_function_id()
        self._context = context or get_context()
        self._finalizer = weakref.finalize(
            self, primitives.compile_erase, self.fun_id, self._context
        )

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        signature, tensors, num_args = compilation_signature(args, kwargs)
        num_call_tensors = len(tensors)
        captured = tree_flatten(self.inputs) if self.inputs is not None else []
        context = self._context
        structure_key = (
            signature,
            tuple((tuple(x.shape), str(x.dtype)) for x in tensors + captured),
        )

        def callback(a: list[Array]) -> list[Array]:
            if self.inputs is not None:
                tree_fill(self.inputs, a[num_call_tensors:])
            try:
                out = self.fun(
                    *tree_unflatten(args, a),
                    **tree_unflatten(kwargs, a, num_args),
                )
                flat, structure = tree_flatten_with_structure(out)
                context.record_structure(self.fun_id, structure_key, structure)
                if self.outputs is not None:
                    flat = flat + tree_flatten(self.outputs)
                return flat
            finally:
                if self.inputs is not None:
                    tree_replace(self.inputs, a[num_call_tensors:], captured)

        compiled = primitives.compile(
            callback, self.fun_id, self.shapeless, signature, context=context
        )
        results = compiled(tensors + captured)

        structure = context.output_structure(self.fun_id, structure_key)
        num_outputs = num_tensors(structure)
        if self.outputs is not None:
            tree_fill(self.outputs, results[num_outputs:])
        return tree_unflatten(structure, results[:num_outputs])

    def evict(self) -> None:
        """Drop every cached trace of this function now."""
        self._finalizer()

    def __repr__(self) -> str:
        name = getattr(self.fun, "__qualname__", repr(self.fun))
        return f"<CompiledFunction {name} id={self.fun_id}>"


def compile(
    fun: Callable[..., Any] | None = None,
    inputs: Any = None,
    outputs: Any = None,
    shapeless: bool = False,
) -> Any:
    """Compile ``fun``, tracing once per distinct call signature.

    Arrays in the call are traced; every other leaf (ints, floats, strings,
    None) is part of the signature, so changing one of them triggers a new
    trace. Can be used as ``@compile`` or ``@compile(inputs=..., ...)``.

    Args:
        fun: Function of arrays, trees of arrays and constants.
        inputs: Tree (list or dict) of state ``fun`` reads implicitly.
        outputs: Tree (list or dict) of state ``fun`` updates implicitly.
        shapeless: Keep a separate set of traces for shape-polymorphic use.
            jax still retraces when an input shape changes, so the flag
            only separates cache entries.

    Returns:
        A :class:`CompiledFunction`.

    Examples:
        >>> import jax.numpy as jnp
        >>> @compile
        ... def scale(x, factor):
        ...     return {"y": x * factor}
        >>> scale(jnp.array([1.0, 2.0]), 3)["y"].tolist()
        [3.0, 6.0]

        >>> state = [jnp.array(0.0)]
        >>> @compile(inputs=state, outputs=state)
        ... def step(x):
        ...     state[0] = state[0] + x
        ...     return state[0]
        >>> _ = step(jnp.array(2.0))
        >>> float(state[0])
        2.0

    """
    if fun is None:
        return functools.partial(compile, inputs=inputs, outputs=outputs, shapeless=shapeless)
    logger.debug("Wrapping %r for compilation (shapeless=%s)", fun, shapeless)
    return CompiledFunction(fun, inputs, outputs, shapeless)
