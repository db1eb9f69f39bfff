"""Transport coefficients from BTE response functions (Brillouin-zone sums).

The convergence driver only relies on the :class:`TransportAggregator`
protocol; :class:`BZSumAggregator` is the default implementation:

    heat_ij   = c · g/(N V) Σ (ε − μ) D(ε) v_i I_j
    charge_ij = c · g/(N V) Σ         D(ε) v_i I_j          (electrons only)

where ``N`` is the number of full-mesh points, ``V`` the cell volume, ``g``
the spin degeneracy and ``D`` the derivative of the equilibrium occupation,
``f(1−f)/k_BT`` for electrons and ``n(n+1)/k_BT`` for phonons.  The unit
factor ``c`` is ``1e21·e`` for responses to a temperature gradient and
``1e21`` for responses to an electric field, giving

* gradient field – heat: W/m/K (κ), charge: A/m/K (σS);
* electric field – heat: A/m (α, divide by T for α/T), charge: 1/Ω/m (σ).
"""

from __future__ import annotations

from typing import NamedTuple, Protocol, Union

import numpy as np
from scipy.constants import elementary_charge as qe
from scipy.constants import physical_constants

from .field_term import field_constants
from .system import Crystal, ElectronSystem, PhononSystem

__all__ = [
    "TransportTensors",
    "TransportAggregator",
    "BZSumAggregator",
    "occupation_derivative",
    "scalar",
]

kB = physical_constants["Boltzmann constant in eV/K"][0]  # eV/K

_UNIT_FACTOR = 1.0e21  # nm, km/s, ps -> SI


class TransportTensors(NamedTuple):
    """Heat-current and charge-current response tensors (3×3 each)."""

    heat: np.ndarray
    charge: np.ndarray


class TransportAggregator(Protocol):
    def integrate(
        self,
        species: str,
        field: str,
        response: np.ndarray,
        system: Union[PhononSystem, ElectronSystem],
        crystal: Crystal,
    ) -> TransportTensors:
        ...


def occupation_derivative(species: str, energies: np.ndarray, chempot: float, T: float) -> np.ndarray:
    """Return ``f(1−f)/k_BT`` (electrons) or ``n(n+1)/k_BT`` (phonons), 1/eV.

    Phonon modes with non-positive energy contribute zero.
    """

    kT = kB * T
    if species == "el":
        x = np.abs((energies - chempot) / kT)
        ex = np.exp(-x)
        return ex / (1.0 + ex) ** 2 / kT

    if species == "ph":
        positive = energies > 0.0
        x = np.where(positive, energies, 1.0) / kT
        ex = np.exp(-x)
        occ = ex / (1.0 - ex) ** 2
        return np.where(positive, occ, 0.0) / kT

    raise ValueError(f"Unknown particle species '{species}'")


class BZSumAggregator:
    """Direct FBZ sum of the response function (see module docstring)."""

    def integrate(
        self,
        species: str,
        field: str,
        response: np.ndarray,
        system: Union[PhononSystem, ElectronSystem],
        crystal: Crystal,
    ) -> TransportTensors:
        field_constants(species, field, crystal.T)  # validates the pair

        ens = system.energies
        if response.shape != system.velocities.shape:
            raise ValueError(f"response shape {response.shape} != {system.velocities.shape}")

        deriv = occupation_derivative(species, ens, system.chempot, crystal.T)

        pref = _UNIT_FACTOR * system.spindeg / (system.n_mesh * crystal.volume)
        if field == "T":
            pref *= qe

        heat = pref * np.einsum("kb,kbi,kbj->ij", (ens - system.chempot) * deriv,
                                system.velocities, response)
        if species == "el":
            charge = pref * np.einsum("kb,kbi,kbj->ij", deriv, system.velocities, response)
        else:
            charge = np.zeros((3, 3))

        return TransportTensors(heat, charge)


def scalar(tensor: np.ndarray) -> float:
    """Return the isotropic average ``trace/3`` of a 3×3 tensor."""

    return float(np.trace(tensor)) / 3.0
