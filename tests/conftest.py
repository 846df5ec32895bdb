import jax.numpy as jnp
import pytest

from odejax.config import set_dtype


@pytest.fixture(autouse=True)
def _ensure_float64():
    """Set float64 precision before every test.

    A test that switches to a lower precision (test_config.py does) must not
    leak it into the tolerance-sensitive solver tests that follow.
    """
    set_dtype(jnp.float64)
    yield
    set_dtype(jnp.float64)
