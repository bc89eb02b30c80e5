"""JAX function-transformation engine for structured arguments.

Transforms (grad, vmap, compile, ...) that accept and return arbitrarily
nested lists, tuples and dicts of arrays mixed with plain Python values.

Modules:
    trees: Flattening trees of arrays and computing call signatures
    primitives: Flat-list transforms implemented with JAX
    autodiff: grad, value_and_grad, jvp, vjp
    transforms: eval, vmap, compile, checkpoint, custom_function
    config: Global compilation switch
    errors: Exception taxonomy
"""

from jax_fte.autodiff import grad, jvp, value_and_grad, vjp
from jax_fte.config import compile_enabled, disable_compile, enable_compile
from jax_fte.transforms import (
    async_eval,
    checkpoint,
    compile,
    custom_function,
    eval,
    vmap,
)

__version__ = "0.1.0"

__all__ = [
    "eval",
    "async_eval",
    "grad",
    "value_and_grad",
    "jvp",
    "vjp",
    "vmap",
    "compile",
    "checkpoint",
    "custom_function",
    "enable_compile",
    "disable_compile",
    "compile_enabled",
]
