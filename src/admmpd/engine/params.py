from __future__ import annotations

import json
from dataclasses import dataclass, fields, replace as dc_replace
from typing import Any, Mapping, Tuple

from .errors import ConfigurationError

LINSOLVERS = ("auto", "direct", "cg", "gs")


@dataclass(frozen=True)
class Options:
    timestep_s: float = 1.0 / 24.0
    max_admm_iters: int = 50
    max_cg_iters: int = 10
    max_gs_iters: int = 30
    mult_k: float = 1.0  # stiffness multiplier for pin constraints
    min_res: float = 1e-6  # relative residual for CG
    youngs: float = 1e6
    poisson: float = 0.299
    grav: Tuple[float, float, float] = (0.0, 0.0, -9.8)

    density: float = 1100.0
    # "auto" factorizes A when no pins are active and falls back to CG otherwise
    linsolver: str = "auto"
    gs_tol: float = 1e-6
    # 0 disables the early exit; only the iteration cap terminates ADMM
    admm_tol: float = 0.0
    num_threads: int = 1

    def __post_init__(self) -> None:
        grav = tuple(float(g) for g in self.grav)
        if len(grav) != 3:
            raise ConfigurationError(f"grav must have 3 components; got {len(grav)}")
        object.__setattr__(self, "grav", grav)

        if not self.timestep_s > 0.0:
            raise ConfigurationError(f"timestep_s must be > 0; got {self.timestep_s}")
        for name in ("max_admm_iters", "max_cg_iters", "max_gs_iters", "num_threads"):
            if int(getattr(self, name)) < 1:
                raise ConfigurationError(f"{name} must be >= 1; got {getattr(self, name)}")
        if self.mult_k < 0.0:
            raise ConfigurationError(f"mult_k must be >= 0; got {self.mult_k}")
        if not self.min_res > 0.0:
            raise ConfigurationError(f"min_res must be > 0; got {self.min_res}")
        if not self.youngs > 0.0:
            raise ConfigurationError(f"youngs must be > 0; got {self.youngs}")
        if not -1.0 < self.poisson < 0.5:
            raise ConfigurationError(f"poisson must lie in (-1, 0.5); got {self.poisson}")
        if not self.density > 0.0:
            raise ConfigurationError(f"density must be > 0; got {self.density}")
        if self.linsolver not in LINSOLVERS:
            raise ConfigurationError(
                f"linsolver must be one of {LINSOLVERS}; got {self.linsolver!r}"
            )
        if self.gs_tol < 0.0 or self.admm_tol < 0.0:
            raise ConfigurationError("gs_tol and admm_tol must be >= 0")

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Options":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(d) - known)
        if unknown:
            raise ConfigurationError(f"unknown option(s): {', '.join(unknown)}")
        return cls(**dict(d))

    def to_dict(self) -> dict:
        out = {f.name: getattr(self, f.name) for f in fields(self)}
        out["grav"] = list(self.grav)
        return out

    def replace(self, **changes: Any) -> "Options":
        return dc_replace(self, **changes)


def load_options(path: str) -> Options:
    """Read a JSON object of option overrides; missing keys keep defaults."""
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{path}: expected a JSON object of options")
    return Options.from_dict(raw)


def save_options(options: Options, path: str, *, indent: int = 2) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(options.to_dict(), f, indent=indent)
