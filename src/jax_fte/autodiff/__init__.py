"""Automatic differentiation of functions over structured arguments.

Reverse mode (grad, value_and_grad) on trees of arrays with positional and
keyword argument selection, and forward/reverse products (jvp, vjp) on
lists of arrays.
"""

from jax_fte.autodiff.argnums import check_call_selection, resolve_argnums_argnames
from jax_fte.autodiff.derivatives import grad, jvp, value_and_grad, vjp

__all__ = [
    "grad",
    "value_and_grad",
    "jvp",
    "vjp",
    "resolve_argnums_argnames",
    "check_call_selection",
]
