"""Containers for the crystal, the two particle species and the solver state.

The band-structure, mesh and symmetry data held here are produced by external
collaborators (symmetry discovery, Wannier interpolation); this package only
consumes them.  Units: energies in eV, velocities in km/s, volume in nm³,
scattering rates in 1/ps.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Union

import numpy as np

from .states import locate

__all__ = [
    "Crystal",
    "PhononSystem",
    "ElectronSystem",
    "Decoupled",
    "CoupledDrag",
    "Coupling",
    "BTEContext",
    "check_ibz_partition",
]


@dataclass
class Crystal:
    """Temperature, unit-cell volume and point-group rotations.

    ``qrotations`` are the rotations (mesh/crystal coordinates) indexed by the
    symmetry ids used in ``ibz2fbz`` and ``equiv_map``.
    """

    T: float
    volume: float
    qrotations: Optional[np.ndarray] = None

    def __post_init__(self):
        if self.T <= 0.0:
            raise ValueError(f"Temperature must be positive, got {self.T}")
        if self.volume <= 0.0:
            raise ValueError(f"Volume must be positive, got {self.volume}")
        if self.qrotations is not None:
            self.qrotations = np.asarray(self.qrotations, dtype=float)


def _as_ibz2fbz(maps: Sequence) -> List[np.ndarray]:
    out = []
    for m in maps:
        arr = np.asarray(m, dtype=np.int64).reshape(-1, 2)
        out.append(arr)
    return out


@dataclass
class PhononSystem:
    """Phonon branches on the full (FBZ) phonon mesh.

    Attributes
    ----------
    mesh
        Phonon wave-vector mesh ``(n1, n2, n3)``.
    energies, velocities
        FBZ energies ``(nq, nbranches)`` and group velocities
        ``(nq, nbranches, 3)``.
    ibz2fbz
        For every IBZ point an ``(nequiv, 2)`` integer array of
        ``(symmetry id, FBZ index)`` pairs.
    equiv_map
        ``equiv_map[isym, iq]`` is the image of full-mesh point *iq* under
        symmetry *isym*, shape ``(nsym, nq)``.
    symmetrizers
        Per-FBZ-point 3×3 projector onto the little-group invariant subspace.
    """

    mesh: np.ndarray
    energies: np.ndarray
    velocities: np.ndarray
    ibz2fbz: List[np.ndarray]
    equiv_map: np.ndarray
    symmetrizers: np.ndarray
    spindeg: int = 1
    chempot: float = 0.0

    def __post_init__(self):
        self.mesh = np.asarray(self.mesh, dtype=np.int64)
        self.energies = np.asarray(self.energies, dtype=float)
        self.velocities = np.asarray(self.velocities, dtype=float)
        self.ibz2fbz = _as_ibz2fbz(self.ibz2fbz)
        self.equiv_map = np.atleast_2d(np.asarray(self.equiv_map, dtype=np.int64))
        self.symmetrizers = np.asarray(self.symmetrizers, dtype=float)
        self.validate()

    # ------------------------------------------------------------------
    # Sizes
    # ------------------------------------------------------------------

    @property
    def nq(self) -> int:
        return self.energies.shape[0]

    @property
    def nbands(self) -> int:
        return self.energies.shape[1]

    @property
    def n_irred(self) -> int:
        return len(self.ibz2fbz)

    @property
    def nequiv(self) -> np.ndarray:
        return np.array([len(m) for m in self.ibz2fbz], dtype=np.int64)

    @property
    def n_mesh(self) -> int:
        return int(np.prod(self.mesh))

    def fbz_index(self, full_indices):
        """FBZ position of full-mesh point(s); identity for phonons."""
        return full_indices

    def validate(self) -> None:
        nq, nb = self.energies.shape
        if self.velocities.shape != (nq, nb, 3):
            raise ValueError(f"velocities shape {self.velocities.shape} != {(nq, nb, 3)}")
        if nq != self.n_mesh:
            raise ValueError(f"Phonon FBZ size {nq} does not match mesh {tuple(self.mesh)}")
        if self.symmetrizers.shape != (nq, 3, 3):
            raise ValueError(f"symmetrizers shape {self.symmetrizers.shape} != {(nq, 3, 3)}")
        if self.equiv_map.shape[1] != self.n_mesh:
            raise ValueError("equiv_map must have one column per full-mesh point")
        if self.chempot != 0.0:
            raise ValueError("Phonon chemical potential must be zero")


@dataclass
class ElectronSystem:
    """Electron bands restricted to the transport energy window.

    The FBZ arrays only contain the ``nk`` in-window wave vectors whose
    full-mesh indices are listed (sorted) in ``indexlist``.  ``ibz2fbz`` and
    ``equiv_map`` are expressed in *full-mesh* indices and are turned into
    FBZ positions with :meth:`fbz_index`.

    ``mesh_ref`` is the per-axis refinement of the electron mesh over the
    phonon mesh; electron–phonon records may reference phonons on the
    electron mesh, which are then interpolated.
    """

    mesh: np.ndarray
    energies: np.ndarray
    velocities: np.ndarray
    indexlist: np.ndarray
    ibz2fbz: List[np.ndarray]
    equiv_map: np.ndarray
    symmetrizers: np.ndarray
    energies_irred: np.ndarray
    chempot: float
    enref: float
    fsthick: float
    spindeg: int = 2
    mesh_ref: np.ndarray = field(default_factory=lambda: np.ones(3, dtype=np.int64))

    def __post_init__(self):
        self.mesh = np.asarray(self.mesh, dtype=np.int64)
        self.energies = np.asarray(self.energies, dtype=float)
        self.velocities = np.asarray(self.velocities, dtype=float)
        self.indexlist = np.asarray(self.indexlist, dtype=np.int64)
        self.ibz2fbz = _as_ibz2fbz(self.ibz2fbz)
        self.equiv_map = np.atleast_2d(np.asarray(self.equiv_map, dtype=np.int64))
        self.symmetrizers = np.asarray(self.symmetrizers, dtype=float)
        self.energies_irred = np.asarray(self.energies_irred, dtype=float)
        self.mesh_ref = np.asarray(self.mesh_ref, dtype=np.int64)
        self.validate()

    @property
    def nk(self) -> int:
        return self.energies.shape[0]

    @property
    def nbands(self) -> int:
        return self.energies.shape[1]

    @property
    def n_irred(self) -> int:
        return len(self.ibz2fbz)

    @property
    def nequiv(self) -> np.ndarray:
        return np.array([len(m) for m in self.ibz2fbz], dtype=np.int64)

    @property
    def n_mesh(self) -> int:
        return int(np.prod(self.mesh))

    def fbz_index(self, full_indices):
        """Position of full-mesh point(s) inside ``indexlist``."""
        return locate(self.indexlist, full_indices)

    def validate(self) -> None:
        nk, nb = self.energies.shape
        if self.velocities.shape != (nk, nb, 3):
            raise ValueError(f"velocities shape {self.velocities.shape} != {(nk, nb, 3)}")
        if self.indexlist.shape != (nk,):
            raise ValueError("indexlist must list one full-mesh index per FBZ point")
        if np.any(np.diff(self.indexlist) <= 0):
            raise ValueError("indexlist must be strictly increasing")
        if self.symmetrizers.shape != (nk, 3, 3):
            raise ValueError(f"symmetrizers shape {self.symmetrizers.shape} != {(nk, 3, 3)}")
        if self.energies_irred.shape != (self.n_irred, nb):
            raise ValueError(
                f"energies_irred shape {self.energies_irred.shape} != {(self.n_irred, nb)}"
            )
        if self.equiv_map.shape[1] != self.n_mesh:
            raise ValueError("equiv_map must have one column per full-mesh point")
        if self.mesh_ref.shape != (3,) or np.any(self.mesh % self.mesh_ref):
            raise ValueError("mesh_ref must divide the electron mesh on every axis")


def check_ibz_partition(system: Union[PhononSystem, ElectronSystem]) -> None:
    """Raise ``ValueError`` unless every FBZ point has exactly one IBZ parent."""

    counts = np.zeros(system.energies.shape[0], dtype=np.int64)
    for maps in system.ibz2fbz:
        pos = np.atleast_1d(system.fbz_index(maps[:, 1]))
        np.add.at(counts, pos, 1)
    if np.any(counts != 1):
        bad = np.flatnonzero(counts != 1)
        raise ValueError(f"FBZ points {bad[:5].tolist()} are not covered exactly once by the IBZ")


# -----------------------------------------------------------------------------
# Coupling mode – selected once at the start of a solve
# -----------------------------------------------------------------------------

@dataclass
class Decoupled:
    """Independent phonon and/or electron BTEs (no drag)."""

    electrons: Optional[ElectronSystem] = None
    phbte: bool = True
    ebte: bool = True


@dataclass
class CoupledDrag:
    """Coupled electron–phonon BTEs including mutual drag."""

    electrons: ElectronSystem


Coupling = Union[Decoupled, CoupledDrag]


# -----------------------------------------------------------------------------
# Mutable solver state
# -----------------------------------------------------------------------------

@dataclass
class BTEContext:
    """RTA rates, field terms and response functions of one solve.

    Field terms and RTA rates are fixed after initialisation; the response
    arrays are refined in place by every iterator sweep.
    """

    ph_rta_rates_ibz: np.ndarray
    ph_field_term_T: np.ndarray
    ph_field_term_E: np.ndarray
    ph_response_T: np.ndarray
    ph_response_E: np.ndarray
    ph_rate_channels: Dict[str, np.ndarray] = field(default_factory=dict)

    el_rta_rates_ibz: Optional[np.ndarray] = None
    el_field_term_T: Optional[np.ndarray] = None
    el_field_term_E: Optional[np.ndarray] = None
    el_response_T: Optional[np.ndarray] = None
    el_response_E: Optional[np.ndarray] = None
    el_rate_channels: Dict[str, np.ndarray] = field(default_factory=dict)
