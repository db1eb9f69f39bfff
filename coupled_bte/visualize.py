"""Visualization utilities for BTE iteration histories and responses.

Matplotlib-based helper functions so users can quickly inspect

* how the tracked transport scalars evolve over the iterations of a loop
  (``BTEResult.history``);
* the magnitude of a response function along its FBZ states.

All routines return the created *matplotlib* figure to allow further tweaking
or saving by callers.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Sequence

import numpy as np
import matplotlib.pyplot as plt

__all__ = ["plot_convergence", "plot_response_magnitude"]


# -----------------------------------------------------------------------------
# Convergence history
# -----------------------------------------------------------------------------


def plot_convergence(
    history: Sequence[Dict[str, float]],
    *,
    keys: Sequence[str] | None = None,
    relative: bool = False,
    save: str | Path | None = None,
):
    """Plot tracked scalars against the iteration number.

    Parameters
    ----------
    history
        Rows of one loop, e.g. ``result.history["drag"]``; each row holds
        ``"iter"`` plus one entry per scalar.
    keys
        Scalars to draw (default: every column except ``iter``).
    relative
        Plot ``|x_n − x_{n-1}|`` on a log axis instead of the raw values, which
        shows how each scalar approaches the convergence threshold.
    save
        Optional path; if provided, figure is saved (PNG) instead of shown.
    """

    if not history:
        raise ValueError("Empty iteration history")

    if keys is None:
        keys = [k for k in history[0] if k != "iter"]
    its = np.array([row["iter"] for row in history])

    fig, axes = plt.subplots(len(keys), 1, figsize=(5, 1.8 * len(keys) + 0.6),
                             sharex=True, squeeze=False)

    for ax, key in zip(axes[:, 0], keys):
        y = np.array([row[key] for row in history], dtype=float)
        if relative:
            ax.semilogy(its[1:], np.abs(np.diff(y)), marker="o", ms=3)
        else:
            ax.plot(its, y, marker="o", ms=3)
        ax.set_ylabel(key)
        ax.grid(True, which="both", alpha=0.3)
    axes[-1, 0].set_xlabel("Iteration")
    fig.tight_layout()

    if save:
        fig.savefig(Path(save), dpi=150)
        plt.close(fig)
    else:
        plt.show(block=False)
    return fig


# -----------------------------------------------------------------------------
# Response magnitude
# -----------------------------------------------------------------------------


def plot_response_magnitude(
    response: np.ndarray,
    energies: np.ndarray,
    *,
    component: int | None = None,
    save: str | Path | None = None,
):
    """Scatter |I| (or one Cartesian component) of every state vs its energy.

    Parameters
    ----------
    response
        Response function ``(n_fbz, nbands, 3)``.
    energies
        FBZ energies ``(n_fbz, nbands)`` in eV.
    component
        0, 1 or 2 to plot a single Cartesian component; ``None`` for the norm.
    """

    response = np.asarray(response)
    energies = np.asarray(energies)
    if response.shape[:2] != energies.shape or response.shape[-1] != 3:
        raise ValueError("response must have shape (n_fbz, nbands, 3) matching energies")

    if component is None:
        y = np.linalg.norm(response, axis=-1)
        ylabel = "|I|"
    elif component in (0, 1, 2):
        y = response[..., component]
        ylabel = f"I_{'xyz'[component]}"
    else:
        raise ValueError(f"Unknown component: {component}")

    fig, ax = plt.subplots(figsize=(5, 3))
    ax.scatter(energies.ravel(), y.ravel(), s=6)
    ax.set_xlabel("Energy (eV)")
    ax.set_ylabel(ylabel)
    ax.grid(True, alpha=0.3)

    if save:
        fig.savefig(Path(save), dpi=150)
        plt.close(fig)
    else:
        plt.show(block=False)
    return fig
