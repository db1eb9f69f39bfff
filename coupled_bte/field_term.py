"""RTA rates (Matthiessen's rule) and the field-coupling term of the BTE.

The field term is the relaxation-time-approximation solution of the BTE and
the fixed driving term of every later iteration:

    F(state) = A · v(state) · (ε(state) − μ)^pow / Γ_IBZ(state)

with ``A = 1/T, pow = 1`` for a temperature gradient and ``A = e, pow = 0``
for an electric field acting on electrons.  Phonons carry no charge, so the
electric field term of phonons is identically zero.

Units: nm·eV/K for the gradient field, nm·C for the electric field.
"""

from __future__ import annotations

from typing import Union

import numpy as np
from scipy.constants import elementary_charge as qe

from .partition import SerialCommunicator, local_range
from .system import ElectronSystem, PhononSystem

__all__ = [
    "matthiessen",
    "field_constants",
    "calculate_field_term",
]


def matthiessen(*channels: np.ndarray) -> np.ndarray:
    """Return the total scattering rate as the sum of independent *channels*."""

    if not channels:
        raise ValueError("At least one scattering channel is required")

    arrays = [np.asarray(c, dtype=float) for c in channels]
    shape = arrays[0].shape
    for arr in arrays[1:]:
        if arr.shape != shape:
            raise ValueError(f"Channel shapes differ: {arr.shape} vs {shape}")
    if any(np.any(arr < 0.0) for arr in arrays):
        raise ValueError("Scattering rates must be non-negative")

    total = np.zeros(shape)
    for arr in arrays:
        total += arr
    return total


def field_constants(species: str, field: str, T: float) -> tuple[float, int]:
    """Return ``(A, pow)`` for the given species/field pair."""

    if species not in ("ph", "el"):
        raise ValueError(f"Unknown particle species '{species}' (expected 'ph' or 'el')")
    if field == "T":
        return 1.0 / T, 1
    if field == "E":
        return qe, 0
    raise ValueError(f"Unknown field type '{field}' (expected 'T' or 'E')")


def calculate_field_term(
    species: str,
    field: str,
    system: Union[PhononSystem, ElectronSystem],
    T: float,
    rta_rates_ibz: np.ndarray,
    *,
    chempot: float | None = None,
    comm=None,
) -> np.ndarray:
    """Return the FBZ field-coupling term, shape ``(n_fbz, nbands, 3)``.

    Parameters
    ----------
    species
        ``"ph"`` or ``"el"``.
    field
        ``"T"`` (temperature gradient) or ``"E"`` (electric field).
    system
        Phonon or electron system providing FBZ energies, velocities and the
        IBZ→FBZ equivalence map.
    T
        Temperature (K).
    rta_rates_ibz
        Total RTA scattering rates on the IBZ, shape ``(n_irred, nbands)``.
        Zero rates mean no scattering channel was found; those states get a
        zero field term.
    chempot
        Chemical potential (eV); defaults to ``system.chempot``.  Must be
        exactly zero for phonons.
    comm
        Communicator; work is split over IBZ wave vectors.
    """

    if comm is None:
        comm = SerialCommunicator()
    if chempot is None:
        chempot = system.chempot

    A, power = field_constants(species, field, T)
    if species == "ph" and chempot != 0.0:
        raise ValueError(f"Phonon chemical potential must be zero, got {chempot}")

    rates = np.asarray(rta_rates_ibz, dtype=float)
    if rates.shape != (system.n_irred, system.nbands):
        raise ValueError(f"RTA rates shape {rates.shape} != {(system.n_irred, system.nbands)}")

    n_fbz, nbands = system.energies.shape
    field_term = np.zeros((n_fbz, nbands, 3))

    # Phonons do not couple to the electric field
    if species == "ph" and field == "E":
        return field_term

    my_range, num_active = local_range(system.n_irred, comm)
    local = np.zeros_like(field_term)

    for ik_ibz in my_range:
        fbz = np.atleast_1d(system.fbz_index(system.ibz2fbz[ik_ibz][:, 1]))
        rate = rates[ik_ibz]
        bands = np.flatnonzero(rate != 0.0)
        if bands.size == 0:
            continue

        ens = system.energies[np.ix_(fbz, bands)]
        vels = system.velocities[np.ix_(fbz, bands, [0, 1, 2])]
        local[np.ix_(fbz, bands, [0, 1, 2])] = (
            A * vels * ((ens - chempot) ** power / rate[bands])[..., None]
        )

    return comm.all_gather_sum(local, num_active)
