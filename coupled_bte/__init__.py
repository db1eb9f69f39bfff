"""Coupled electron–phonon BTE solver

This package iterates the linearised Boltzmann transport equations of
electrons and phonons, optionally coupled through mutual drag, and reports
the resulting thermal and electrical transport tensors.

Key sub-modules:
    partition     – SPMD work split and collective reductions (serial/threads/MPI)
    states        – Flat state-index codec, mesh vectors, fine-mesh interpolation
    system        – Crystal, phonon/electron systems, coupling modes, solver context
    scattering    – Per-state scattering-table providers
    field_term    – Matthiessen's rule and the field-coupling (RTA) term
    iterate       – One Jacobi sweep of the phonon / electron scattering integrals
    transport     – Brillouin-zone sums for the transport tensors
    drag          – Kelvin–Onsager recombination of the drag response
    solver        – Convergence driver (`solve_bte`)
    diagnostics   – Output directories, RTA tables, iteration tables
    visualize     – Matplotlib convergence plots
    synthetic     – Toy symmetry maps, scattering tables and rates for demos
"""

# Public re-exports for convenience
# (Only light-weight modules are re-imported here.)

__all__ = [
    "__version__",
    "config",
    "partition",
    "states",
    "system",
]

__version__ = "0.1.0"

# noqa import positions kept intentionally

from . import config      # noqa: E402,F401
from . import partition   # noqa: E402,F401
from . import states      # noqa: E402,F401
from . import system      # noqa: E402,F401
from . import scattering  # noqa: E402,F401
from . import field_term  # noqa: E402,F401
from . import symmetrize  # noqa: E402,F401
from . import iterate     # noqa: E402,F401
from . import transport   # noqa: E402,F401
from . import drag        # noqa: E402,F401
from . import diagnostics # noqa: E402,F401
from . import solver      # noqa: E402,F401

__all__.append("scattering")
__all__.append("field_term")
__all__.append("symmetrize")
__all__.append("iterate")
__all__.append("transport")
__all__.append("drag")
__all__.append("diagnostics")
__all__.append("solver")
