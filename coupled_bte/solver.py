"""Convergence driver for the linearised electron–phonon BTEs.

The driver walks the state machine

    INIT → (RTA) → ITERATING → {CONVERGED, MAXITER_REACHED}

INIT combines the channel rates with Matthiessen's rule, builds the field
terms of both fields, starts every response at its field term (the RTA
solution) and reports the RTA transport coefficients as iteration 0.  One of
three schemes is then iterated, selected once from the coupling mode:

* **coupled drag** – for every phonon sweep (both fields) the electron
  response is iterated to convergence; after each electron sweep the
  temperature-gradient response is recombined so that Kelvin–Onsager holds;
* **decoupled phonons** – phonon sweeps alone;
* **decoupled electrons** – electric-field sweeps alone, with the
  temperature-gradient response set from the Seebeck-like identity
  ``I_T = (ε − μ)/(e T) · I_E`` after every sweep.

A loop halts once all of its tracked scalars change by less than
``conv_thres`` between consecutive passes; exhausting ``maxiter`` only sets
the ``MAXITER_REACHED`` status.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Sequence

import numpy as np

from . import config as _cfg
from .diagnostics import IterationTable, save_rta_rates, save_transport_tensors, temperature_dir
from .drag import correct_phonon_drag, split_electron_response
from .field_term import calculate_field_term, matthiessen
from .iterate import iterate_bte_el, iterate_bte_ph
from .partition import SerialCommunicator
from .scattering import ScatteringTableProvider
from .symmetrize import symmetrize
from .system import (
    BTEContext,
    CoupledDrag,
    Coupling,
    Crystal,
    Decoupled,
    ElectronSystem,
    PhononSystem,
    check_ibz_partition,
)
from .transport import BZSumAggregator, TransportAggregator, scalar

__all__ = [
    "SolveStatus",
    "LoopStatus",
    "BTEResult",
    "has_converged",
    "ConvergenceTracker",
    "ko_deviation",
    "solve_bte",
]

PH_KEYS = ("ph_kappa", "ph_alphabyT")
EL_KEYS = ("el_kappa0", "el_sigmaS", "el_sigma", "el_alphabyT")

_LABELS = {
    "el_kappa0": "k0_el[W/m/K]",
    "el_sigmaS": "sigmaS[A/m/K]",
    "ph_kappa": "k_ph[W/m/K]",
    "el_sigma": "sigma[1/Ohm/m]",
    "el_alphabyT": "alpha_el/T[A/m/K]",
    "ph_alphabyT": "alpha_ph/T[A/m/K]",
    "ko_dev": "KO dev.[%]",
}


class SolveStatus(Enum):
    INIT = "init"
    ITERATING = "iterating"
    CONVERGED = "converged"
    MAXITER_REACHED = "maxiter_reached"


@dataclass
class LoopStatus:
    status: SolveStatus = SolveStatus.INIT
    iterations: int = 0


@dataclass
class BTEResult:
    """Outcome of :func:`solve_bte`.

    ``tensors`` holds the final 3×3 transport tensors keyed ``ph_kappa``,
    ``ph_alphabyT``, ``el_kappa0``, ``el_sigmaS``, ``el_sigma`` and
    ``el_alphabyT`` (electron keys only when electrons were solved).
    ``history`` maps each loop name to its table rows, iteration 0 first.
    """

    tensors: Dict[str, np.ndarray]
    loops: Dict[str, LoopStatus]
    history: Dict[str, List[Dict[str, float]]]
    context: BTEContext
    out_dir: Path | None = None

    @property
    def converged(self) -> bool:
        return bool(self.loops) and all(
            loop.status is SolveStatus.CONVERGED for loop in self.loops.values()
        )

    @property
    def scalars(self) -> Dict[str, float]:
        return {key: scalar(t) for key, t in self.tensors.items()}


# -----------------------------------------------------------------------------
# Convergence utilities
# -----------------------------------------------------------------------------

def has_converged(old: float, new: float, thres: float) -> bool:
    """Return ``True`` when ``|new − old| < thres``."""

    return abs(new - old) < thres


class ConvergenceTracker:
    """All-or-nothing convergence test over a fixed set of named scalars.

    The previous values are replaced only when the test fails, so a tracker
    created once per loop carries its history across outer passes.
    """

    def __init__(self, names: Iterable[str], thres: float, initial: Mapping[str, float] | None = None):
        self.names = tuple(names)
        self.thres = thres
        self.old: Dict[str, float] | None = None
        if initial is not None:
            self.old = {n: float(initial[n]) for n in self.names}

    def update(self, values: Mapping[str, float]) -> bool:
        new = {n: float(values[n]) for n in self.names}
        if self.old is not None and all(
            has_converged(self.old[n], new[n], self.thres) for n in self.names
        ):
            return True
        self.old = new
        return False


def ko_deviation(sigmaS: float, alpha_el: float, alpha_ph: float, *, floor: float | None = None) -> float:
    """Kelvin–Onsager deviation in percent, ``100·|(σS − α/T)/(α/T)|``.

    ``alpha_el`` and ``alpha_ph`` are the Peltier-like scalars already divided
    by T.  Values below *floor* (``ko_dev_floor``) are reported as zero; a
    vanishing total gives ``nan``.
    """

    if floor is None:
        floor = _cfg.get_param("ko_dev_floor")

    total = alpha_el + alpha_ph
    if total == 0.0:
        return float("nan")
    dev = 100.0 * abs((sigmaS - total) / total)
    return 0.0 if dev < floor else dev


# -----------------------------------------------------------------------------
# Driver
# -----------------------------------------------------------------------------

class _Run:
    """Per-worker state of one solve."""

    def __init__(self, crystal, phonons, electrons, ctx, provider, comm, aggregator, log, tdir):
        self.crystal = crystal
        self.ph = phonons
        self.el = electrons
        self.ctx = ctx
        self.provider = provider
        self.comm = comm
        self.agg = aggregator
        self.log = log
        self.tdir = tdir
        self.tensors: Dict[str, np.ndarray] = {}

    # --- transport coefficients ------------------------------------------

    def update_ph(self) -> None:
        T = self.crystal.T
        self.tensors["ph_kappa"] = self.agg.integrate(
            "ph", "T", self.ctx.ph_response_T, self.ph, self.crystal
        ).heat
        self.tensors["ph_alphabyT"] = self.agg.integrate(
            "ph", "E", self.ctx.ph_response_E, self.ph, self.crystal
        ).heat / T

    def update_el_E(self) -> None:
        alpha, sigma = self.agg.integrate("el", "E", self.ctx.el_response_E, self.el, self.crystal)
        self.tensors["el_alphabyT"] = alpha / self.crystal.T
        self.tensors["el_sigma"] = sigma

    def update_el_T(self) -> None:
        kappa0, sigmaS = self.agg.integrate("el", "T", self.ctx.el_response_T, self.el, self.crystal)
        self.tensors["el_kappa0"] = kappa0
        self.tensors["el_sigmaS"] = sigmaS

    def scalars(self) -> Dict[str, float]:
        values = {key: scalar(t) for key, t in self.tensors.items()}
        if "el_sigmaS" in values:
            values["ko_dev"] = ko_deviation(
                values["el_sigmaS"], values["el_alphabyT"], values["ph_alphabyT"]
            )
        return values

    def table(self, name: str, keys: Sequence[str]) -> IterationTable:
        path = self.tdir / f"{name}_iterations.txt" if self.tdir is not None else None
        return IterationTable([(k, _LABELS[k]) for k in keys], path=path, echo=self.log)

    # --- sweeps -------------------------------------------------------------

    def sweep_ph(self, drag: bool) -> None:
        ctx = self.ctx
        for field_term, response, response_el in (
            (ctx.ph_field_term_T, ctx.ph_response_T, ctx.el_response_T),
            (ctx.ph_field_term_E, ctx.ph_response_E, ctx.el_response_E),
        ):
            iterate_bte_ph(
                self.ph,
                ctx.ph_rta_rates_ibz,
                field_term,
                response,
                self.provider,
                electrons=self.el if drag else None,
                response_el=response_el if drag else None,
                comm=self.comm,
            )

    def sweep_el(self, field: str, drag: bool) -> None:
        ctx = self.ctx
        if field == "E":
            field_term, response, response_ph = ctx.el_field_term_E, ctx.el_response_E, ctx.ph_response_E
        else:
            field_term, response, response_ph = ctx.el_field_term_T, ctx.el_response_T, ctx.ph_response_T
        iterate_bte_el(
            self.el,
            ctx.el_rta_rates_ibz,
            field_term,
            response,
            self.provider,
            phonons=self.ph if drag else None,
            response_ph=response_ph if drag else None,
            qrotations=self.crystal.qrotations,
            comm=self.comm,
        )

    def enforce_kelvin_onsager(self) -> None:
        """Recombine ``I_T = I_el + λ I_ph`` so that σS matches α/T."""

        ctx = self.ctx
        I_el, I_ph = split_electron_response(ctx.el_response_T, ctx.el_response_E, self.el, self.crystal.T)

        def sigma_s_of(lam: float) -> float:
            return scalar(self.agg.integrate("el", "T", lam * I_ph, self.el, self.crystal).charge)

        corr = correct_phonon_drag(sigma_s_of, scalar(self.tensors["ph_alphabyT"]))
        if not corr.converged and self.log:
            print(f"[KO] Bisection stopped after {corr.iterations} steps, using λ = {corr.lam:.6f}")
        ctx.el_response_T[...] = I_el + corr.lam * I_ph


def _initialize(
    species: str,
    system,
    crystal: Crystal,
    rate_channels: Mapping[str, np.ndarray],
    comm,
):
    if not rate_channels:
        raise ValueError(f"No RTA rate channels given for species '{species}'")
    check_ibz_partition(system)

    rates = matthiessen(*rate_channels.values())
    terms = []
    for fld in ("T", "E"):
        ft = calculate_field_term(species, fld, system, crystal.T, rates, comm=comm)
        terms.append(symmetrize(ft, system.symmetrizers))
    return rates, terms[0], terms[1]


def _run_loop(run: _Run, name: str, keys, tracker, maxiter: int, step, title: str):
    """Iterate *step* until *tracker* reports convergence or *maxiter* passes."""

    table = run.table(name, keys)
    table.start(f"[BTE] {title}")
    table.add(0, run.scalars())

    loop = LoopStatus(SolveStatus.ITERATING, 0)
    for it in range(1, maxiter + 1):
        converged = step()
        values = run.scalars()
        table.add(it, values)
        loop.iterations = it
        if converged is None:
            converged = tracker.update(values)
        if converged:
            loop.status = SolveStatus.CONVERGED
            break
    else:
        loop.status = SolveStatus.MAXITER_REACHED

    if run.log:
        print(f"[BTE] {title.rstrip(':')} {loop.status.value} after {loop.iterations} iteration(s)")
    return loop, table.rows


def solve_bte(
    crystal: Crystal,
    phonons: PhononSystem,
    coupling: Coupling,
    *,
    ph_rate_channels: Mapping[str, np.ndarray],
    el_rate_channels: Mapping[str, np.ndarray] | None = None,
    provider: ScatteringTableProvider,
    comm=None,
    aggregator: TransportAggregator | None = None,
    maxiter: int | None = None,
    conv_thres: float | None = None,
    out_dir: str | Path | None = None,
    verbose: bool | None = None,
) -> BTEResult:
    """Solve the linearised BTEs at temperature ``crystal.T``.

    Parameters
    ----------
    crystal
        Temperature, volume and rotations.
    phonons
        Phonon system; always required (its RTA coefficients are reported).
    coupling
        ``CoupledDrag(electrons)`` or ``Decoupled(electrons, phbte, ebte)``.
    ph_rate_channels, el_rate_channels
        Named IBZ RTA rates per scattering channel, combined with
        Matthiessen's rule.  Electron channels are required whenever
        electrons are solved.
    provider
        Scattering-table provider shared by all sweeps.
    comm
        Communicator of this worker; every worker calls ``solve_bte`` with
        identical inputs.
    aggregator
        Transport aggregator (defaults to :class:`BZSumAggregator`).
    maxiter, conv_thres, verbose
        Default to the :mod:`coupled_bte.config` values.
    out_dir
        If given, RTA rates, iteration tables and the converged tensors are
        written to the temperature subdirectory of *out_dir* by the root
        worker.
    """

    if comm is None:
        comm = SerialCommunicator()
    if aggregator is None:
        aggregator = BZSumAggregator()
    if maxiter is None:
        maxiter = _cfg.get_param("maxiter")
    if conv_thres is None:
        conv_thres = _cfg.get_param("conv_thres")
    if verbose is None:
        verbose = _cfg.get_param("verbose")

    if isinstance(coupling, CoupledDrag):
        drag, run_ph, run_el = True, False, False
    elif isinstance(coupling, Decoupled):
        drag, run_ph, run_el = False, coupling.phbte, coupling.ebte
        if not (run_ph or run_el):
            raise ValueError("Decoupled mode needs at least one of phbte/ebte")
    else:
        raise TypeError(f"Unknown coupling mode {coupling!r}")

    electrons: ElectronSystem | None = coupling.electrons
    need_el = drag or run_el
    if need_el and electrons is None:
        raise ValueError("Electron transport requested without an electron system")
    if not need_el:
        electrons = None
    if need_el and not el_rate_channels:
        raise ValueError("Electron transport requested without electron RTA rate channels")
    if drag and np.any(electrons.mesh != phonons.mesh * electrons.mesh_ref):
        raise ValueError(
            f"Electron mesh {tuple(electrons.mesh)} must equal phonon mesh "
            f"{tuple(phonons.mesh)} times mesh_ref {tuple(electrons.mesh_ref)}"
        )

    log = bool(verbose) and comm.is_root
    T = crystal.T
    tdir = temperature_dir(out_dir, T) if (out_dir is not None and comm.is_root) else None

    # ------------------------------------------------------------------
    # INIT: RTA rates, field terms, iteration-0 responses
    # ------------------------------------------------------------------
    ph_rates, ph_ft_T, ph_ft_E = _initialize("ph", phonons, crystal, ph_rate_channels, comm)
    ctx = BTEContext(
        ph_rta_rates_ibz=ph_rates,
        ph_field_term_T=ph_ft_T,
        ph_field_term_E=ph_ft_E,
        ph_response_T=ph_ft_T.copy(),
        ph_response_E=ph_ft_E.copy(),
        ph_rate_channels=dict(ph_rate_channels),
    )
    if tdir is not None:
        save_rta_rates(tdir, "ph", ctx.ph_rate_channels, ph_rates)

    if electrons is not None:
        el_rates, el_ft_T, el_ft_E = _initialize("el", electrons, crystal, el_rate_channels, comm)
        ctx.el_rta_rates_ibz = el_rates
        ctx.el_field_term_T = el_ft_T
        ctx.el_field_term_E = el_ft_E
        ctx.el_response_T = el_ft_T.copy()
        ctx.el_response_E = el_ft_E.copy()
        ctx.el_rate_channels = dict(el_rate_channels)
        if tdir is not None:
            save_rta_rates(tdir, "el", ctx.el_rate_channels, el_rates)

    if log:
        print(f"[RTA] T = {T:.2f} K: field terms and RTA responses initialised")

    run = _Run(crystal, phonons, electrons, ctx, provider, comm, aggregator, log, tdir)
    run.update_ph()
    if electrons is not None:
        run.update_el_E()
        run.update_el_T()

    loops: Dict[str, LoopStatus] = {}
    history: Dict[str, List[Dict[str, float]]] = {}

    # ------------------------------------------------------------------
    # ITERATING
    # ------------------------------------------------------------------
    if drag:
        el_tracker = ConvergenceTracker(EL_KEYS, conv_thres, initial=run.scalars())
        ph_tracker = ConvergenceTracker(PH_KEYS, conv_thres, initial=run.scalars())
        inner = LoopStatus()

        def drag_step() -> bool:
            run.sweep_ph(drag=True)
            run.update_ph()

            inner.status = SolveStatus.ITERATING
            for it_el in range(1, maxiter + 1):
                run.sweep_el("E", drag=True)
                run.update_el_E()
                run.sweep_el("T", drag=True)
                run.enforce_kelvin_onsager()
                run.update_el_T()
                inner.iterations = it_el
                if el_tracker.update(run.scalars()):
                    inner.status = SolveStatus.CONVERGED
                    break
            else:
                inner.status = SolveStatus.MAXITER_REACHED

            return ph_tracker.update(run.scalars())

        keys = ("el_kappa0", "el_sigmaS", "ph_kappa", "el_sigma", "el_alphabyT", "ph_alphabyT", "ko_dev")
        loops["drag"], history["drag"] = _run_loop(
            run, "drag", keys, ph_tracker, maxiter, drag_step,
            "Coupled electron-phonon transport:",
        )
        loops["drag_el"] = inner

    if run_ph:
        ph_tracker = ConvergenceTracker(PH_KEYS, conv_thres, initial=run.scalars())

        def ph_step() -> None:
            run.sweep_ph(drag=False)
            run.update_ph()

        loops["ph"], history["ph"] = _run_loop(
            run, "ph", PH_KEYS, ph_tracker, maxiter, ph_step,
            "Decoupled phonon transport:",
        )

    if run_el:
        el_tracker = ConvergenceTracker(EL_KEYS, conv_thres, initial=run.scalars())

        def el_step() -> None:
            run.sweep_el("E", drag=False)
            run.update_el_E()
            # Seebeck-like identity replaces the gradient sweep
            I_el, _ = split_electron_response(ctx.el_response_T, ctx.el_response_E, electrons, T)
            ctx.el_response_T[...] = I_el
            run.update_el_T()

        loops["el"], history["el"] = _run_loop(
            run, "el", EL_KEYS, el_tracker, maxiter, el_step,
            "Decoupled electron transport:",
        )

    tensors = {key: np.array(t) for key, t in run.tensors.items()}
    if tdir is not None:
        save_transport_tensors(tdir, tensors)
        if log:
            print(f"[BTE] Transport tensors written to {tdir}")

    return BTEResult(tensors=tensors, loops=loops, history=history, context=ctx, out_dir=tdir)
