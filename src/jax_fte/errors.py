"""Exceptions raised by the transformation engine.

Every error derives from :class:`TransformError` and from the builtin it
refines, so ``except ValueError`` keeps working for callers that do not
care about the finer taxonomy. Messages start with a bracketed tag naming
the transform that raised them, e.g. ``[vmap]`` or ``[value_and_grad]``.
"""

from __future__ import annotations


class TransformError(Exception):
    """Base class for all engine errors."""


class InvalidArgumentError(TransformError, ValueError):
    """Malformed ``argnums``/``argnames`` selection."""


class TreeLeafError(TransformError, ValueError):
    """A tree contains a leaf that is not allowed where it was found."""


class StructureMismatchError(TransformError, ValueError):
    """Two trees walked in lockstep disagree in shape."""


class ReturnContractError(TransformError, TypeError):
    """A differentiated function returned something other than a loss."""


class AxisError(TransformError, ValueError):
    """Invalid vectorization axis or axis specification."""


class ArityError(TransformError, ValueError):
    """Wrong number of arrays for a tree or an override's return value."""


class UnsupportedArgumentError(TransformError, ValueError):
    """An override was invoked with arguments it cannot accept."""
