"""Process-wide engine configuration.

The only switch is whether :func:`jax_fte.transforms.compile` actually
compiles. It starts from the ``JAX_FTE_DISABLE_COMPILE`` environment
variable, read once at import, and can be flipped at runtime with
:func:`enable_compile` / :func:`disable_compile`.
"""

from __future__ import annotations

import os
import threading

DISABLE_COMPILE_ENV = "JAX_FTE_DISABLE_COMPILE"


def bool_env(varname: str, default: bool) -> bool:
    """Read an environment variable and interpret it as a boolean.

    True values are (case insensitive): 'y', 'yes', 't', 'true', 'on', and '1';
    false values are 'n', 'no', 'f', 'false', 'off', and '0'.

    Args:
        varname: the name of the variable
        default: the default boolean value

    Returns:
        The parsed value, or ``default`` when the variable is unset.

    Raises:
        ValueError: if the environment variable is anything else.

    Examples:
        >>> bool_env("JAX_FTE_SURELY_UNSET", True)
        True

    """
    val = os.getenv(varname, str(default))
    val = val.lower()
    if val in ("y", "yes", "t", "true", "on", "1"):
        return True
    elif val in ("n", "no", "f", "false", "off", "0"):
        return False
    else:
        raise ValueError(f"invalid truth value {val!r} for environment {varname!r}")


_lock = threading.Lock()
_compile_enabled = not bool_env(DISABLE_COMPILE_ENV, False)


def compile_enabled() -> bool:
    """Whether compiled functions are traced and cached."""
    return _compile_enabled


def enable_compile() -> None:
    """Globally enable compilation.

    This overrides the ``JAX_FTE_DISABLE_COMPILE`` environment variable if
    it was set.
    """
    global _compile_enabled
    with _lock:
        _compile_enabled = True


def disable_compile() -> None:
    """Globally disable compilation.

    Compiled functions keep working but run eagerly, invoking the wrapped
    function on every call.
    """
    global _compile_enabled
    with _lock:
        _compile_enabled = False
