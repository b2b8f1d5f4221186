"""Exception types raised by the ADMM-PD engine.

Only configuration problems escape a solver call. Numerical stagnation and
per-element clamping are absorbed by the driver and reported through logging
and :class:`~admmpd.engine.solver.StepStats`.
"""


class AdmmPdError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(AdmmPdError, ValueError):
    """Inconsistent options, meshes or system matrices; no step is taken."""


class SampleError(AdmmPdError, IndexError):
    """A surface sample references vertices outside the evaluated buffer."""
