"""Coupled electron–phonon BTE on a small synthetic cubic crystal.

The script builds a toy crystal with one symmetry operation (identity), a
few phonon branches and one parabolic-like electron band on the same mesh,
fills an in-memory scattering-table provider with random sparse processes
and runs :pyfunc:`coupled_bte.solver.solve_bte`.

Workflow
--------
1. Build phonon and electron systems on an ``n × n × n`` mesh.
2. Generate W±, Y and X± records for every irreducible state.
3. Solve in coupled-drag mode (default) or decoupled mode (``--decoupled``).
4. Write RTA rates, iteration tables and converged tensors under ``--out``;
   optionally save a convergence plot (``--plot``).

Usage::

    python examples/run_synthetic_bte.py --mesh 4 --temperature 300
    python examples/run_synthetic_bte.py --decoupled --workers 3

Notes
-----
* ``--workers N`` runs N in-process SPMD workers (threads); the result is the
  same as the serial run.
* The synthetic transition weights are kept small compared with the RTA
  rates so the Jacobi iteration contracts.
"""

from __future__ import annotations

import argparse
from pathlib import Path

import numpy as np

import coupled_bte as cb
from coupled_bte.partition import ThreadGroup
from coupled_bte.states import demux_vector
from coupled_bte.synthetic import identity_symmetry, random_provider, random_rates
from coupled_bte.system import CoupledDrag, Crystal, Decoupled, ElectronSystem, PhononSystem

# -----------------------------------------------------------------------------
# Command-line interface
# -----------------------------------------------------------------------------

def _parse_cli() -> argparse.Namespace:
    p = argparse.ArgumentParser(formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    p.add_argument("--mesh", type=int, default=4, help="Points per axis of the (cubic) mesh.")
    p.add_argument("--branches", type=int, default=3, help="Number of phonon branches.")
    p.add_argument("--temperature", type=float, default=300.0, help="Temperature (K).")
    p.add_argument("--volume", type=float, default=0.04, help="Unit-cell volume (nm^3).")
    p.add_argument("--chempot", type=float, default=0.0, help="Electron chemical potential (eV).")
    p.add_argument("--processes", type=int, default=4, help="Scattering processes per state and channel.")
    p.add_argument("--decoupled", action="store_true", help="Solve phonon and electron BTEs without drag.")
    p.add_argument("--max-iter", type=int, default=50, help="Maximum number of (outer) iterations.")
    p.add_argument("--conv-thres", type=float, default=1e-4, help="Convergence threshold on the tracked scalars.")
    p.add_argument("--workers", type=int, default=1, help="In-process SPMD workers.")
    p.add_argument("--seed", type=int, default=7, help="Seed of the random scattering tables.")
    p.add_argument("--out", type=Path, default=Path("outputs"), help="Output directory.")
    p.add_argument("--plot", action="store_true", help="Save a convergence plot in the temperature directory.")
    return p.parse_args()


# -----------------------------------------------------------------------------
# Synthetic crystal
# -----------------------------------------------------------------------------

def build_systems(n: int, nbranches: int, chempot: float):
    mesh = np.array([n, n, n])
    npts = int(np.prod(mesh))
    k = 2.0 * np.pi * demux_vector(np.arange(npts), mesh) / n  # (npts, 3)

    ibz2fbz, equiv_map, symmetrizers = identity_symmetry(npts)

    # Phonons: sine dispersions with branch-dependent stiffness (eV, km/s)
    scale = 0.01 * (1.0 + np.arange(nbranches))
    s = np.sqrt(np.sum(np.sin(0.5 * k) ** 2, axis=1))
    ph_ens = 0.002 + scale[None, :] * s[:, None]
    ph_vels = np.empty((npts, nbranches, 3))
    for b in range(nbranches):
        ph_vels[:, b, :] = 5.0 * (b + 1) * np.sin(k) / (1.0 + s[:, None])

    phonons = PhononSystem(mesh, ph_ens, ph_vels, ibz2fbz, equiv_map, symmetrizers)

    # Electrons: one cosine band centred on the chemical potential
    el_ens = chempot + 0.05 * np.sum(np.cos(k), axis=1)[:, None]
    el_vels = (100.0 * np.sin(k))[:, None, :]
    electrons = ElectronSystem(
        mesh,
        el_ens,
        el_vels,
        indexlist=np.arange(npts),
        ibz2fbz=ibz2fbz,
        equiv_map=equiv_map,
        symmetrizers=symmetrizers,
        energies_irred=el_ens.copy(),
        chempot=chempot,
        enref=chempot,
        fsthick=1.0,
    )
    return phonons, electrons


# -----------------------------------------------------------------------------
# Main
# -----------------------------------------------------------------------------

def main() -> None:
    args = _parse_cli()

    phonons, electrons = build_systems(args.mesh, args.branches, args.chempot)
    provider = random_provider(phonons, electrons, args.processes, args.seed, el_weight=0.1)
    crystal = Crystal(T=args.temperature, volume=args.volume)

    coupling = Decoupled(electrons) if args.decoupled else CoupledDrag(electrons)
    solve_kwargs = dict(
        ph_rate_channels=random_rates(phonons, ("anh", "bound"), 1.0, args.seed + 1),
        el_rate_channels=random_rates(electrons, ("eph", "imp"), 2.0, args.seed + 2),
        provider=provider,
        maxiter=args.max_iter,
        conv_thres=args.conv_thres,
        out_dir=args.out,
    )

    print(f"[BTE] {args.mesh}^3 mesh, {phonons.nbands} phonon branches, "
          f"{'decoupled' if args.decoupled else 'coupled drag'} mode, {args.workers} worker(s)")

    if args.workers == 1:
        result = cb.solver.solve_bte(crystal, phonons, coupling, **solve_kwargs)
    else:
        results = ThreadGroup(args.workers).run(
            lambda comm: cb.solver.solve_bte(crystal, phonons, coupling, comm=comm, **solve_kwargs)
        )
        result = results[0]

    print("[BTE] Converged" if result.converged else "[BTE] Maximum iterations reached")
    for key, value in result.scalars.items():
        print(f"    {key:12s} = {value: .6e}")

    if args.plot and result.out_dir is not None:
        from coupled_bte.visualize import plot_convergence

        loop = "drag" if "drag" in result.history else "ph"
        png = result.out_dir / f"convergence_{loop}.png"
        plot_convergence(result.history[loop], relative=True, save=png)
        print(f"[BTE] Convergence plot saved to {png}")


if __name__ == "__main__":
    main()
