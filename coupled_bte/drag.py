"""Kelvin–Onsager consistency of the coupled electron response.

With mutual drag the electron response to a temperature gradient splits into

    I_T = I_el + I_ph ,    I_el = (ε − μ)/(e T) · I_E

where ``I_el`` is the purely electronic (Seebeck-like) part fixed by the
electric-field response and ``I_ph`` the part dragged along by phonons.  The
Kelvin–Onsager relation ``σS = (α_el + α_ph)/T`` is restored by rescaling the
phonon part, ``I_T ← I_el + λ I_ph``, with λ chosen by bisection so that the
σS produced by ``λ I_ph`` alone matches the phonon Peltier-like scalar
``α_ph/T``.

Functions implemented:
    split_electron_response(I_T, I_E, el, T) – (I_el, I_ph) decomposition.
    correct_phonon_drag(σS(λ), constraint)   – bisection for λ.
"""

from __future__ import annotations

from typing import Callable, NamedTuple, Tuple

import numpy as np
from scipy.constants import elementary_charge as qe

from . import config as _cfg
from .system import ElectronSystem

__all__ = [
    "DragCorrection",
    "correct_phonon_drag",
    "split_electron_response",
]


class DragCorrection(NamedTuple):
    """Result of :func:`correct_phonon_drag`."""

    lam: float
    iterations: int
    converged: bool


def split_electron_response(
    response_T: np.ndarray,
    response_E: np.ndarray,
    el: ElectronSystem,
    T: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """Return ``(I_el, I_ph)`` with ``I_el + I_ph == response_T``.

    ``I_el = (ε − μ)/(e T) · response_E`` is the electron part of the
    temperature-gradient response; the remainder is attributed to drag.
    """

    if response_T.shape != response_E.shape:
        raise ValueError(f"Response shapes differ: {response_T.shape} vs {response_E.shape}")

    I_el = ((el.energies - el.chempot) / (qe * T))[..., None] * response_E
    I_ph = response_T - I_el
    return I_el, I_ph


def correct_phonon_drag(
    sigma_s_of: Callable[[float], float],
    constraint: float,
    *,
    bracket: Tuple[float, float] | None = None,
    maxiter: int | None = None,
    thresh: float | None = None,
) -> DragCorrection:
    """Bisect for the scale λ of the phonon-drag part of the electron response.

    Each step evaluates the midpoint ``λ = (a + b)/2``:

        |σS(λ) − c| < thresh  → done
        |σS(λ)| < |c|         → a = λ
        otherwise             → b = λ

    If *maxiter* steps pass without meeting the tolerance the last midpoint is
    returned with ``converged=False``; callers use it as the answer.

    Parameters
    ----------
    sigma_s_of
        Callable returning the scalar σS (A/m/K) produced by ``λ · I_ph``.
    constraint
        Target value *c*, the phonon Peltier-like scalar ``α_ph/T``.
    bracket, maxiter, thresh
        Default to ``ko_bracket``, ``ko_maxiter`` and ``ko_thresh`` from
        :mod:`coupled_bte.config`.
    """

    if bracket is None:
        bracket = _cfg.get_param("ko_bracket")
    if maxiter is None:
        maxiter = _cfg.get_param("ko_maxiter")
    if thresh is None:
        thresh = _cfg.get_param("ko_thresh")

    a, b = (float(x) for x in bracket)
    if not a < b:
        raise ValueError(f"Invalid bisection bracket ({a}, {b})")
    if maxiter < 1:
        raise ValueError(f"ko_maxiter must be >= 1, got {maxiter}")

    lam = 0.5 * (a + b)
    for it in range(1, maxiter + 1):
        lam = 0.5 * (a + b)
        s = sigma_s_of(lam)

        if abs(s - constraint) < thresh:
            return DragCorrection(lam, it, True)
        if abs(s) < abs(constraint):
            a = lam
        else:
            b = lam

    return DragCorrection(lam, maxiter, False)
