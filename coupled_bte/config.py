"""Project-wide default parameters for the BTE solver.

A minimal *runtime* configuration mechanism using a plain dictionary.  This is
*not* intended as a full-blown settings system – it merely centralises the
important numerical knobs so users can override them programmatically without
editing each function call.

Example
-------
>>> import coupled_bte as cb
>>> cb.config.set_param("conv_thres", 1e-6)
>>> result = cb.solver.solve_bte(crystal, phonons, coupling,
...                              ph_rate_channels=ph_rates, provider=provider)
"""

from __future__ import annotations

from typing import Any, Dict

_defaults: Dict[str, Any] = {
    # Outer/inner iteration control
    "maxiter": 50,
    "conv_thres": 1e-4,
    # Kelvin-Onsager bisection
    "ko_maxiter": 100,
    "ko_thresh": 1e-6,
    "ko_bracket": (0.0, 2.0),
    # KO deviation (%) below this is reported as exactly zero
    "ko_dev_floor": 1e-6,
    # Reporting
    "verbose": True,
    "table_precision": 8,
}


def get_param(name: str):
    """Return current value of *name* (raises *KeyError* if unknown)."""
    return _defaults[name]


def set_param(name: str, value: Any) -> None:
    """Override parameter *name* at runtime (must exist)."""
    if name not in _defaults:
        raise KeyError(f"Unknown parameter '{name}'")
    _defaults[name] = value
