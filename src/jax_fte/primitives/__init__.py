"""Primitive transforms over flat lists of arrays.

Everything structural (trees, argument selection, output packaging) lives
in the drivers; the primitives only see ordered lists of arrays and map
them onto JAX transforms. The compile primitive keeps its traces in the
process-wide registries of :mod:`jax_fte.primitives.context`.
"""

from jax_fte.primitives.backend import (
    NOT_VECTORIZED,
    async_evaluate,
    checkpoint,
    compile,
    compile_clear_cache,
    compile_erase,
    custom_function,
    evaluate,
    jvp,
    replace_vmap,
    trace_vmap,
    value_and_grad,
    vjp,
)
from jax_fte.primitives.context import (
    RuntimeContext,
    get_context,
    next_function_id,
    use_context,
)

__all__ = [
    "NOT_VECTORIZED",
    "evaluate",
    "async_evaluate",
    "trace_vmap",
    "replace_vmap",
    "value_and_grad",
    "jvp",
    "vjp",
    "compile",
    "compile_erase",
    "compile_clear_cache",
    "checkpoint",
    "custom_function",
    "RuntimeContext",
    "get_context",
    "next_function_id",
    "use_context",
]
