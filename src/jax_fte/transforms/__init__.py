"""Function transformations over structured arguments.

- eval / async_eval: Compute every array in a set of trees
- vmap: Vectorize over an axis of the arguments
- compile: Trace once per call signature and replay cached traces
- checkpoint: Rematerialize intermediates in the backward pass
- custom_function: Override differentiation and vectorization rules
"""

from jax_fte.transforms.checkpointing import CheckpointBody, StructureSlot, checkpoint
from jax_fte.transforms.compilation import CompiledFunction, compile
from jax_fte.transforms.core import async_eval, axes_to_flat_tree, eval, vmap
from jax_fte.transforms.custom import custom_function

__all__ = [
    "eval",
    "async_eval",
    "axes_to_flat_tree",
    "vmap",
    "compile",
    "CompiledFunction",
    "checkpoint",
    "CheckpointBody",
    "StructureSlot",
    "custom_function",
]
