"""Primitive transform layer, implemented with JAX.

The drivers in :mod:`jax_fte.autodiff` and :mod:`jax_fte.transforms` only
ever hand flat lists of arrays to the functions in this module: every
``fun`` argument maps a list of arrays to a list of arrays. Each primitive
maps onto the JAX transform that implements it:

- value_and_grad, jvp, vjp → ``jax.value_and_grad``, ``jax.jvp``, ``jax.vjp``
- trace_vmap / replace_vmap → ``jax.make_jaxpr`` then ``jax.vmap`` of the jaxpr
- compile → ``jax.jit``, one cached entry per (function, signature)
- checkpoint → ``jax.checkpoint``
- custom_function → ``custom_vmap``, ``custom_vjp`` and ``custom_jvp``

In flat axis lists ``-1`` (:data:`NOT_VECTORIZED`) means "no vectorized
axis"; it is translated to ``None`` for JAX.

References:
    - JAX source: jax/_src/api.py, jax/_src/custom_derivatives.py,
      jax/_src/custom_batching.py

"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from typing import Any

import jax
import jax.numpy as jnp
from jax import Array
from jax.custom_batching import custom_vmap
from jax.custom_derivatives import SymbolicZero

from jax_fte import config
from jax_fte.errors import ArityError, UnsupportedArgumentError
from jax_fte.primitives.context import RuntimeContext, get_context

logger = logging.getLogger(__name__)

FlatFun = Callable[[list[Array]], list[Array]]

NOT_VECTORIZED = -1


def _jax_axis(axis: int) -> int | None:
    return None if axis == NOT_VECTORIZED else axis


def evaluate(tensors: Sequence[Array]) -> None:
    """Block until every array in ``tensors`` is computed."""
    jax.block_until_ready(list(tensors))


def async_evaluate(tensors: Sequence[Array]) -> None:
    """Schedule evaluation of ``tensors`` without waiting for it.

    JAX dispatches every operation asynchronously, so the arrays are already
    scheduled by the time they exist; there is nothing left to enqueue.
    """
    del tensors


def trace_vmap(
    fun: FlatFun,
    inputs: Sequence[Array],
    in_axes: Sequence[int],
) -> tuple[list[jax.ShapeDtypeStruct], Any]:
    """Trace ``fun`` once on per-example inputs.

    Args:
        fun: Flat function to vectorize.
        inputs: Batched inputs.
        in_axes: Vectorized axis per input, or :data:`NOT_VECTORIZED`.

    Returns:
        Tuple of (trace inputs, trace outputs): the per-example input
        shapes and the closed jaxpr recorded from ``fun``.

    """
    if len(inputs) != len(in_axes):
        raise ArityError(
            f"[vmap] Got {len(in_axes)} axes for {len(inputs)} inputs."
        )
    trace_inputs = []
    for x, axis in zip(inputs, in_axes):
        shape = tuple(x.shape)
        if axis != NOT_VECTORIZED:
            shape = shape[:axis] + shape[axis + 1 :]
        trace_inputs.append(jax.ShapeDtypeStruct(shape, x.dtype))
    trace_outputs = jax.make_jaxpr(lambda *xs: fun(list(xs)))(*trace_inputs)
    return trace_inputs, trace_outputs


def replace_vmap(
    inputs: Sequence[Array],
    trace_inputs: Sequence[jax.ShapeDtypeStruct],
    trace_outputs: Any,
    in_axes: Sequence[int],
    out_axes: Sequence[int],
) -> list[Array]:
    """Run a trace from :func:`trace_vmap` vectorized over the real inputs."""
    if len(inputs) != len(trace_inputs):
        raise ArityError(
            f"[vmap] The trace expects {len(trace_inputs)} inputs but got {len(inputs)}."
        )
    if len(out_axes) != len(trace_outputs.out_avals):
        raise ArityError(
            f"[vmap] Got {len(out_axes)} output axes for "
            f"{len(trace_outputs.out_avals)} outputs."
        )

    def replay(*xs: Array) -> list[Array]:
        return jax.core.eval_jaxpr(trace_outputs.jaxpr, trace_outputs.consts, *xs)

    batched = jax.vmap(
        replay,
        in_axes=tuple(_jax_axis(axis) for axis in in_axes),
        out_axes=[_jax_axis(axis) for axis in out_axes],
    )
    return list(batched(*inputs))


def value_and_grad(fun: FlatFun, grad_indices: Sequence[int]) -> Callable[[Sequence[Array]], tuple[list[Array], list[Array]]]:
    """Differentiate the first output of ``fun`` w.r.t. the inputs at ``grad_indices``.

    Returns:
        Function mapping inputs to (outputs, gradients), one gradient per
        entry of ``grad_indices``.

    Examples:
        >>> import jax.numpy as jnp
        >>> f = value_and_grad(lambda xs: [jnp.sum(xs[0] * xs[1])], [0])
        >>> values, grads = f([jnp.array([1.0, 2.0]), jnp.array([3.0, 4.0])])
        >>> grads[0].tolist()
        [3.0, 4.0]

    """
    grad_indices = list(grad_indices)

    def run(tensors: Sequence[Array]) -> tuple[list[Array], list[Array]]:
        primals = list(tensors)

        def loss(diff: list[Array]) -> tuple[Array, list[Array]]:
            inputs = list(primals)
            for i, x in zip(grad_indices, diff):
                inputs[i] = x
            outputs = fun(inputs)
            if not outputs:
                raise ArityError("[value_and_grad] The function returned no arrays.")
            return outputs[0], outputs

        (_, values), grads = jax.value_and_grad(loss, has_aux=True)(
            [primals[i] for i in grad_indices]
        )
        return list(values), list(grads)

    return run


def jvp(
    fun: FlatFun,
    primals: Sequence[Array],
    tangents: Sequence[Array],
) -> tuple[list[Array], list[Array]]:
    """Forward-mode product of the Jacobian of ``fun`` with ``tangents``."""
    if len(primals) != len(tangents):
        raise ArityError(
            f"[jvp] Got {len(tangents)} tangents for {len(primals)} primals."
        )
    try:
        outputs, jvps = jax.jvp(lambda *xs: fun(list(xs)), tuple(primals), tuple(tangents))
    except TypeError as e:
        if "custom_vjp" not in str(e):
            raise
        raise UnsupportedArgumentError(
            "[custom jvp] Forward mode is not available for a function with a vjp override."
        ) from e
    return list(outputs), list(jvps)


def vjp(
    fun: FlatFun,
    primals: Sequence[Array],
    cotangents: Sequence[Array],
) -> tuple[list[Array], list[Array]]:
    """Reverse-mode product of ``cotangents`` with the Jacobian of ``fun``."""
    outputs, pullback = jax.vjp(lambda *xs: fun(list(xs)), *primals)
    if len(outputs) != len(cotangents):
        raise ArityError(
            f"[vjp] Got {len(cotangents)} cotangents for {len(outputs)} outputs."
        )
    vjps = pullback(list(cotangents))
    return list(outputs), list(vjps)


class _CompiledEntry:
    """A cached trace: one jitted trampoline per (function, signature).

    The trampoline calls whichever callback the current thread installed,
    so the user function only runs when JAX actually traces.
    """

    def __init__(self, fun_id: int, shapeless: bool) -> None:
        self.fun_id = fun_id
        self.shapeless = shapeless
        self.num_traces = 0
        self._local = threading.local()
        self._jitted = jax.jit(self._trampoline)

    def _trampoline(self, *tensors: Array) -> list[Array]:
        self.num_traces += 1
        logger.debug(
            "Tracing compiled function %d (trace #%d, %d inputs)",
            self.fun_id,
            self.num_traces,
            len(tensors),
        )
        return self._local.callback(list(tensors))

    def __call__(self, callback: FlatFun, tensors: Sequence[Array]) -> list[Array]:
        self._local.callback = callback
        try:
            return list(self._jitted(*tensors))
        finally:
            self._local.callback = None


def compile(
    fun: FlatFun,
    fun_id: int,
    shapeless: bool = False,
    constants: Sequence[int] = (),
    context: RuntimeContext | None = None,
) -> Callable[[Sequence[Array]], list[Array]]:
    """Compile ``fun``, caching the trace under ``(fun_id, constants, shapeless)``.

    ``fun`` is only called when a trace is needed. With compilation disabled
    (see :mod:`jax_fte.config`) ``fun`` is returned unchanged and runs
    eagerly.

    JAX keys its own trace cache on input shapes and dtypes, so a
    ``shapeless`` entry is still retraced when an input shape changes.
    """
    if not config.compile_enabled():
        return fun
    context = context or get_context()
    key = (tuple(constants), shapeless)
    entry = context.compiled_entry(fun_id, key, lambda: _CompiledEntry(fun_id, shapeless))

    def run(tensors: Sequence[Array]) -> list[Array]:
        return entry(fun, tensors)

    return run


def compile_erase(fun_id: int, context: RuntimeContext | None = None) -> None:
    (context or get_context()).erase(fun_id)


def compile_clear_cache(context: RuntimeContext | None = None) -> None:
    (context or get_context()).clear()


def checkpoint(fun: FlatFun) -> Callable[[Sequence[Array]], list[Array]]:
    """Rematerialize ``fun``'s intermediates in the backward pass."""
    remat = jax.checkpoint(lambda *xs: fun(list(xs)))

    def run(tensors: Sequence[Array]) -> list[Array]:
        return list(remat(*tensors))

    return run


def custom_function(
    fun: FlatFun,
    fun_vjp: Callable[[list[Array], list[Array], list[Array]], list[Array]] | None = None,
    fun_jvp: Callable[[list[Array], list[Array], list[int]], list[Array]] | None = None,
    fun_vmap: Callable[[list[Array], list[int]], tuple[list[Array], list[int]]] | None = None,
) -> Callable[[Sequence[Array]], list[Array]]:
    """Attach custom vjp, jvp and vmap rules to a flat function.

    Args:
        fun: Forward function.
        fun_vjp: ``(primals, cotangents, outputs) -> input cotangents``.
        fun_jvp: ``(primals, tangents, argnums) -> output tangents`` where
            ``tangents`` only holds the tangents of the inputs at ``argnums``.
        fun_vmap: ``(inputs, axes) -> (outputs, output axes)``.

    Returns:
        Flat function using the given rules and the default ones for the
        rest. JAX allows one differentiation rule per function: with both a
        vjp and a jvp rule the vjp rule wins and forward mode is unavailable.

    """

    def primal(*xs: Array) -> tuple[Array, ...]:
        return tuple(fun(list(xs)))

    batched: Callable[..., tuple[Array, ...]] = primal
    if fun_vmap is not None:
        batched = custom_vmap(primal)

        @batched.def_vmap
        def vmap_rule(axis_size, in_batched, *xs):
            del axis_size
            axes = [0 if b else NOT_VECTORIZED for b in in_batched]
            outputs, out_axes = fun_vmap(list(xs), axes)
            if len(outputs) != len(out_axes):
                raise ArityError(
                    f"[custom vmap] Got {len(out_axes)} output axes for {len(outputs)} outputs."
                )
            outputs = [
                x if axis == NOT_VECTORIZED else jnp.moveaxis(x, axis, 0)
                for x, axis in zip(outputs, out_axes)
            ]
            return tuple(outputs), tuple(axis != NOT_VECTORIZED for axis in out_axes)

    if fun_vjp is not None:
        wrapped = jax.custom_vjp(batched)

        def fwd(*xs):
            outputs = batched(*xs)
            return outputs, (xs, outputs)

        def bwd(residuals, cotangents):
            xs, outputs = residuals
            grads = fun_vjp(list(xs), list(cotangents), list(outputs))
            if len(grads) != len(xs):
                raise ArityError(
                    f"[custom vjp] Got {len(grads)} cotangents for {len(xs)} inputs."
                )
            return tuple(grads)

        wrapped.defvjp(fwd, bwd)
    elif fun_jvp is not None:
        wrapped = jax.custom_jvp(batched)

        def jvp_rule(primals, tangents):
            outputs = batched(*primals)
            argnums = [i for i, t in enumerate(tangents) if not isinstance(t, SymbolicZero)]
            out_tangents = fun_jvp(list(primals), [tangents[i] for i in argnums], argnums)
            if len(out_tangents) != len(outputs):
                raise ArityError(
                    f"[custom jvp] Got {len(out_tangents)} tangents for {len(outputs)} outputs."
                )
            return outputs, tuple(out_tangents)

        wrapped.defjvp(jvp_rule, symbolic_zeros=True)
    elif fun_vmap is not None:
        # Keep the default derivatives reachable around the batching rule.
        wrapped = jax.custom_jvp(batched)

        def default_jvp(primals, tangents):
            return jax.jvp(primal, primals, tangents)

        wrapped.defjvp(default_jvp)
    else:
        wrapped = primal

    def run(tensors: Sequence[Array]) -> list[Array]:
        return list(wrapped(*tensors))

    return run
