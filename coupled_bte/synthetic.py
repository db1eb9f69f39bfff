"""Synthetic inputs for demonstrations and tests.

Functions implemented:
    identity_symmetry(n)                  – IBZ = FBZ maps of a crystal whose only
                                            symmetry is the identity.
    random_provider(ph, el, nproc, seed)  – Sparse random W±, Y and X± records for
                                            every irreducible state.
    random_rates(system, names, base, seed)
                                          – Two named RTA rate channels.

The transition weights are small compared with the rates produced by
:func:`random_rates` (``base >= 1``), so the Jacobi iteration contracts.  The
records are not reciprocal: coupled-drag solves on them generally cannot
satisfy Kelvin–Onsager with λ in the default bracket.
"""

from __future__ import annotations

from typing import Dict, Sequence, Tuple

import numpy as np

from .scattering import ChannelKind, InMemoryProvider, TransitionRecords
from .states import Direct
from .system import ElectronSystem, PhononSystem

__all__ = ["identity_symmetry", "random_provider", "random_rates"]


def identity_symmetry(n_points: int):
    """Return ``(ibz2fbz, equiv_map, symmetrizers)`` for *n_points* points."""

    ibz2fbz = [np.array([[0, i]]) for i in range(n_points)]
    equiv_map = np.arange(n_points)[None, :]
    symmetrizers = np.tile(np.eye(3), (n_points, 1, 1))
    return ibz2fbz, equiv_map, symmetrizers


def random_provider(
    phonons: PhononSystem,
    electrons: ElectronSystem,
    nproc: int = 3,
    seed: int = 2,
    *,
    ph_weight: float = 0.05,
    drag_weight: float = 0.02,
    el_weight: float = 0.05,
) -> InMemoryProvider:
    """Fill an :class:`InMemoryProvider` with *nproc* random processes per table.

    Weights are drawn uniformly from ``[0, *_weight)``; partners are uniform
    over all FBZ states of the relevant species.
    """

    rng = np.random.default_rng(seed)
    provider = InMemoryProvider()
    nph = phonons.nq * phonons.nbands
    nel = electrons.nk * electrons.nbands

    for istate in range(phonons.n_irred * phonons.nbands):
        for kind in (ChannelKind.PH_PLUS, ChannelKind.PH_MINUS):
            provider.add(kind, istate, TransitionRecords(
                rng.uniform(0.0, ph_weight, nproc),
                rng.integers(0, nph, nproc),
                rng.integers(0, nph, nproc),
            ))
        provider.add(ChannelKind.PH_DRAG, istate, TransitionRecords(
            rng.uniform(0.0, drag_weight, nproc),
            rng.integers(0, nel, nproc),
            rng.integers(0, nel, nproc),
        ))

    for istate in range(electrons.n_irred * electrons.nbands):
        refs = [
            Direct(int(b), int(q))
            for b, q in zip(rng.integers(0, phonons.nbands, nproc), rng.integers(0, phonons.nq, nproc))
        ]
        plus = TransitionRecords.from_refs(
            rng.uniform(0.0, el_weight, nproc), rng.integers(0, nel, nproc), refs, phonons.nbands
        )
        minus = TransitionRecords(rng.uniform(0.0, el_weight, nproc), plus.partner1, plus.partner2, plus.interpolated)
        provider.add(ChannelKind.EL_PLUS, istate, plus)
        provider.add(ChannelKind.EL_MINUS, istate, minus)

    return provider


def random_rates(
    system,
    names: Sequence[str] = ("anh", "bound"),
    base: float = 1.0,
    seed: int = 3,
) -> Dict[str, np.ndarray]:
    """Return ``{names[0]: base + U(0, 0.5), names[1]: 0.2 base}`` on the IBZ."""

    rng = np.random.default_rng(seed)
    shape: Tuple[int, int] = (system.n_irred, system.nbands)
    return {
        names[0]: base + rng.uniform(0.0, 0.5, shape),
        names[1]: np.full(shape, 0.2 * base),
    }
