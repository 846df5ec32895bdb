"""Event system: callbacks that interrupt integration at precise times.

- :class:`ContinuousCallback` -- zero crossing of a condition, located by
  root bracketing on the dense interpolant.
- :class:`DiscreteCallback` -- condition tested at the end of each step.
- :class:`PresetTimeCallback` -- schedule of exact times.
- :class:`CallbackSet` -- ordered collection; registration order breaks ties.
"""

from odejax.events._callbacks import (
    CallbackSet,
    ContinuousCallback,
    DiscreteCallback,
    PresetTimeCallback,
    as_callback_set,
)
from odejax.events._rootfind import RootResult, crosses, find_root, locate_crossing

__all__ = [
    "CallbackSet",
    "ContinuousCallback",
    "DiscreteCallback",
    "PresetTimeCallback",
    "RootResult",
    "as_callback_set",
    "crosses",
    "find_root",
    "locate_crossing",
]
