"""One Jacobi sweep of the phonon and electron scattering integrals.

Each sweep refines a response function ``I`` from its previous iterate:

    I_new(λ) = F(λ) + τ_IBZ(λ) · Σ_processes W · [combination of I_old(partners)]

All right-hand-side values come from the *previous* iterate; contributions of
the current sweep never feed back into it.  Work is split over IBZ states;
every worker writes the FBZ images of its own states into a private buffer,
the buffers are summed with :meth:`all_gather_sum`, the result replaces the
response in place and is finally symmetrised.

Scattering tables are fetched one initial state at a time from a
:class:`~coupled_bte.scattering.ScatteringTableProvider`.
"""

from __future__ import annotations

import numpy as np

from .partition import SerialCommunicator, local_range
from .scattering import ChannelKind, ScatteringTableProvider
from .states import decode_state, demux_vector, interpolate_response, rotate_mesh_vector
from .symmetrize import symmetrize
from .system import ElectronSystem, PhononSystem

__all__ = [
    "rta_lifetime",
    "iterate_bte_ph",
    "iterate_bte_el",
]


def rta_lifetime(rate: float) -> float:
    """Return 1/rate, or 0 when no scattering channel exists (rate == 0)."""

    return 1.0 / rate if rate != 0.0 else 0.0


# -----------------------------------------------------------------------------
# Phonon sweep
# -----------------------------------------------------------------------------

def iterate_bte_ph(
    ph: PhononSystem,
    rta_rates_ibz: np.ndarray,
    field_term: np.ndarray,
    response_ph: np.ndarray,
    provider: ScatteringTableProvider,
    *,
    electrons: ElectronSystem | None = None,
    response_el: np.ndarray | None = None,
    comm=None,
) -> np.ndarray:
    """Iterate the phonon BTE one step, updating *response_ph* in place.

    Parameters
    ----------
    ph
        Phonon system.
    rta_rates_ibz
        Total phonon RTA rates on the IBZ, ``(nq_irred, nbranches)``.
    field_term
        Phonon field-coupling term for the field being solved.
    response_ph
        Phonon response for the same field; overwritten with the new iterate.
    provider
        Source of the W± (and, with drag, Y) records.
    electrons, response_el
        Pass both to include phonon–electron drag; *response_el* is the
        electron response to the **same** field.
    comm
        Communicator (defaults to a single worker).
    """

    if (electrons is None) != (response_el is None):
        raise ValueError("Drag requires both the electron system and its response")
    drag = electrons is not None
    if comm is None:
        comm = SerialCommunicator()

    nbranches = ph.nbands
    nstates_irred = ph.n_irred * nbranches
    my_range, num_active = local_range(nstates_irred, comm)

    local = np.zeros_like(response_ph)

    for istate1 in my_range:
        s1, iq1_ibz = decode_state(istate1, nbranches)
        tau_ibz = rta_lifetime(rta_rates_ibz[iq1_ibz, s1])

        Wp = provider.fetch(ChannelKind.PH_PLUS, istate1)
        Wm = provider.fetch(ChannelKind.PH_MINUS, istate1)
        s2p, q2p = decode_state(Wp.partner1, nbranches)
        s3p, q3p = decode_state(Wp.partner2, nbranches)
        s2m, q2m = decode_state(Wm.partner1, nbranches)
        s3m, q3m = decode_state(Wm.partner2, nbranches)

        if drag:
            Y = provider.fetch(ChannelKind.PH_DRAG, istate1)
            m, ik = decode_state(Y.partner1, electrons.nbands)
            n, ikp = decode_state(Y.partner2, electrons.nbands)

        # Sum over the symmetry images of the IBZ point
        for iq1_sym, iq1_fbz in ph.ibz2fbz[iq1_ibz]:
            emap = ph.equiv_map[iq1_sym]

            # Plus processes
            acc = Wp.weights @ (response_ph[emap[q3p], s3p] - response_ph[emap[q2p], s2p])
            # Minus processes
            acc = acc + 0.5 * (Wm.weights @ (response_ph[emap[q3m], s3m] + response_ph[emap[q2m], s2m]))

            if drag:
                aux1 = electrons.fbz_index(electrons.equiv_map[iq1_sym, ik])
                aux2 = electrons.fbz_index(electrons.equiv_map[iq1_sym, ikp])
                acc = acc + electrons.spindeg * (
                    Y.weights @ (response_el[aux2, n] - response_el[aux1, m])
                )

            local[iq1_fbz, s1] = field_term[iq1_fbz, s1] + acc * tau_ibz

    response_ph[...] = comm.all_gather_sum(local, num_active)
    return symmetrize(response_ph, ph.symmetrizers)


# -----------------------------------------------------------------------------
# Electron sweep
# -----------------------------------------------------------------------------

def _phonon_drag_values(
    ph: PhononSystem,
    el: ElectronSystem,
    response_ph: np.ndarray,
    branches: np.ndarray,
    wavevectors: np.ndarray,
    interpolated: np.ndarray,
    isym: int,
    qrotations: np.ndarray | None,
) -> np.ndarray:
    """Return the phonon response F(q) or G(q) seen by every process."""

    values = np.empty((branches.size, 3))

    direct = ~interpolated
    values[direct] = response_ph[ph.equiv_map[isym, wavevectors[direct]], branches[direct]]

    if np.any(interpolated):
        if qrotations is None:
            raise ValueError("Interpolated phonon references require crystal rotations")
        fine = demux_vector(wavevectors[interpolated], el.mesh)
        fine = rotate_mesh_vector(qrotations[isym], fine, el.mesh)
        values[interpolated] = interpolate_response(
            response_ph, ph.mesh, el.mesh_ref, fine, branches[interpolated]
        )
    return values


def iterate_bte_el(
    el: ElectronSystem,
    rta_rates_ibz: np.ndarray,
    field_term: np.ndarray,
    response_el: np.ndarray,
    provider: ScatteringTableProvider,
    *,
    phonons: PhononSystem | None = None,
    response_ph: np.ndarray | None = None,
    qrotations: np.ndarray | None = None,
    comm=None,
) -> np.ndarray:
    """Iterate the electron BTE one step, updating *response_el* in place.

    Only IBZ states with ``|ε − enref| <= fsthick`` are swept; the rest are
    skipped entirely.  With drag (*phonons* and *response_ph* given) each
    electron–phonon process also subtracts the phonon response of its
    phonon, which is interpolated when the phonon sits on the finer electron
    mesh.  The subtraction uses the odd parity ``F(−q) = −F(q)``.
    """

    if (phonons is None) != (response_ph is None):
        raise ValueError("Drag requires both the phonon system and its response")
    drag = phonons is not None
    if comm is None:
        comm = SerialCommunicator()

    nbands = el.nbands
    nstates_irred = el.n_irred * nbands
    my_range, num_active = local_range(nstates_irred, comm)

    local = np.zeros_like(response_el)

    for istate in my_range:
        m, ik_ibz = decode_state(istate, nbands)

        # Transport window
        if abs(el.energies_irred[ik_ibz, m] - el.enref) > el.fsthick:
            continue

        tau_ibz = rta_lifetime(rta_rates_ibz[ik_ibz, m])

        # X+ and X- share one per-state table, read in two calls
        Xplus = provider.fetch(ChannelKind.EL_PLUS, istate)
        Xminus = provider.fetch(ChannelKind.EL_MINUS, istate)
        if len(Xplus) != len(Xminus):
            raise ValueError(
                f"X+ and X- tables of state {istate} differ in length ({len(Xplus)} vs {len(Xminus)})"
            )
        X = Xplus.weights + Xminus.weights

        n, ikp = decode_state(Xplus.partner1, nbands)
        if drag:
            s, iq = decode_state(Xplus.partner2, phonons.nbands)

        for ik_sym, ik_full in el.ibz2fbz[ik_ibz]:
            ik_fbz = el.fbz_index(ik_full)

            # Self contribution (final electron rotated into this image)
            aux = el.fbz_index(el.equiv_map[ik_sym, ikp])
            acc = X @ response_el[aux, n]

            if drag:
                ForG = _phonon_drag_values(
                    phonons, el, response_ph, s, iq, Xplus.interpolated, ik_sym, qrotations
                )
                acc = acc - X @ ForG

            local[ik_fbz, m] = field_term[ik_fbz, m] + acc * tau_ibz

    response_el[...] = comm.all_gather_sum(local, num_active)
    return symmetrize(response_el, el.symmetrizers)
