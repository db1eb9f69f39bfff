"""Point-group symmetrisation of per-wave-vector vector quantities.

A single function :func:`symmetrize` applies the precomputed symmetriser of
each FBZ wave vector to every band's Cartesian 3-vector.  The symmetrisers are
projectors onto the subspace left invariant by the little group of the wave
vector, so applying them twice is the same as applying them once.
"""

from __future__ import annotations

import numpy as np

__all__ = ["symmetrize"]


def symmetrize(response: np.ndarray, symmetrizers: np.ndarray) -> np.ndarray:
    """Replace ``response[q, b]`` by ``symmetrizers[q] @ response[q, b]`` in place.

    Parameters
    ----------
    response
        Array of shape ``(nq, nbands, 3)``; modified in place.
    symmetrizers
        Array of shape ``(nq, 3, 3)``.

    Returns
    -------
    response
        The same array, for chaining.
    """

    if symmetrizers.shape != (response.shape[0], 3, 3):
        raise ValueError(
            f"symmetrizers shape {symmetrizers.shape} incompatible with response {response.shape}"
        )

    response[...] = np.einsum("qij,qbj->qbi", symmetrizers, response)
    return response
