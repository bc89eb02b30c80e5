"""Gradient checkpointing for functions over structured arguments.

References:
    - JAX docs: https://jax.readthedocs.io/en/latest/gradient-checkpointing.html
    - JAX source: jax/_src/ad_checkpoint.py

"""

from __future__ import annotations

import functools
import weakref
from collections.abc import Callable
from typing import Any

from jax import Array

from jax_fte import primitives
from jax_fte.trees import call_flat, flatten_call, tree_unflatten


class StructureSlot:
    """Holds the output structure of the most recent trace of a body."""

    __slots__ = ("structure", "__weakref__")

    def __init__(self) -> None:
        self.structure: Any = None


class CheckpointBody:
    """The flat function handed to the checkpoint primitive.

    Replays the call from a flat list of arrays and writes the structure of
    the result to its slot. The slot is only weakly referenced: the body can
    outlive the call that created it (it is re-run when the backward pass
    rematerializes), and by then nobody reads the slot anymore. Re-running
    writes the same structure again.
    """

    def __init__(self, fun: Callable[..., Any], call_structure: Any, slot: StructureSlot) -> None:
        self.fun = fun
        self.call_structure = call_structure
        self._slot = weakref.ref(slot)

    def __call__(self, tensors: list[Array]) -> list[Array]:
        outputs, structure = call_flat(self.fun, self.call_structure, tensors)
        slot = self._slot()
        if slot is not None:
            slot.structure = structure
        return outputs


def checkpoint(fun: Callable[..., Any]) -> Callable[..., Any]:
    """Recompute ``fun``'s intermediates during the backward pass.

    Trades compute for memory: none of the values computed inside ``fun``
    are stored for differentiation, they are recomputed from the inputs
    when the gradient is taken.

    Args:
        fun: Function of arrays, trees of arrays and constants.

    Returns:
        Function with the same signature and results as ``fun``.

    Examples:
        >>> import jax
        >>> import jax.numpy as jnp
        >>> block = checkpoint(lambda x, scale=1.0: {"y": jnp.sin(x) * scale})
        >>> g = jax.grad(lambda x: block(x, scale=2.0)["y"])(jnp.array(0.0))
        >>> float(g)
        2.0

    """

    @functools.wraps(fun)
    def checkpointed(*args: Any, **kwargs: Any) -> Any:
        tensors, call_structure = flatten_call(args, kwargs)
        slot = StructureSlot()
        body = CheckpointBody(fun, call_structure, slot)
        outputs = primitives.checkpoint(body)(tensors)
        return tree_unflatten(slot.structure, outputs)

    return checkpointed
