"""Module-wide floating-point precision configuration.

Provides ``set_dtype`` and ``get_dtype`` to control the float dtype used for
state vectors throughout odejax.  The default is ``jnp.float64``: adaptive
error control with tight tolerances is meaningless in single precision, so
JAX's 64-bit mode (``jax_enable_x64``) is enabled when this module is
imported.

Call ``set_dtype`` **before** any JIT compilation, just like JAX's own
``jax.config.update("jax_enable_x64", True)``.  Under JIT, ``get_dtype()``
runs during tracing and its result is baked into the compiled program.

Solution time grids are always kept in float64 regardless of this setting,
so that preset event times are reproduced exactly.
"""

from __future__ import annotations

import jax
import jax.numpy as jnp

_VALID_DTYPES = (jnp.float16, jnp.bfloat16, jnp.float32, jnp.float64)

jax.config.update("jax_enable_x64", True)

_dtype = jnp.float64


def set_dtype(dtype) -> None:
    """Set the module-wide float dtype for odejax state vectors.

    Must be called **before** any ``jax.jit`` compilation.  In eager mode
    the change takes effect immediately.

    If *dtype* is ``jnp.float64``, JAX's 64-bit mode is (re-)enabled via
    ``jax.config.update("jax_enable_x64", True)``.

    Args:
        dtype: One of ``jnp.float16``, ``jnp.bfloat16``, ``jnp.float32``,
            or ``jnp.float64``.

    Raises:
        ValueError: If *dtype* is not a supported float type.
    """
    global _dtype
    if dtype not in _VALID_DTYPES:
        raise ValueError(
            f"Unsupported dtype {dtype}. Must be one of: "
            f"jnp.float16, jnp.bfloat16, jnp.float32, jnp.float64"
        )
    if dtype == jnp.float64:
        jax.config.update("jax_enable_x64", True)
    _dtype = dtype


def get_dtype():
    """Return the current module-wide float dtype.

    Returns:
        The active float dtype (default ``jnp.float64``).
    """
    return _dtype


def get_time_rounding() -> float:
    """Return the relative distance under which two times are treated as equal.

    Used by the stepper when deciding whether a step lands on a stop (end
    of span or preset event time).  The value scales with the precision of
    the configured float dtype:

    - ``float64``:  1e-13
    - ``float32``:  1e-6
    - ``float16`` / ``bfloat16``: 1e-3

    Returns:
        float: Relative rounding tolerance.
    """
    if _dtype == jnp.float64:
        return 1e-13
    if _dtype == jnp.float32:
        return 1e-6
    return 1e-3
