"""State indexing, mesh bookkeeping and phonon-reference helpers.

A *state* is the pair (band, wave vector).  The flat state index used to key
the scattering tables is

    index = wavevector * nbands + band          (all indices 0-based)

and :func:`decode_state` is its exact inverse.  Wave vectors on a mesh are
addressed either by a flat full-mesh index or by an integer index vector;
:func:`mux_vector` / :func:`demux_vector` convert between the two (C order,
last axis fastest).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple, Union

import numpy as np

__all__ = [
    "encode_state",
    "decode_state",
    "mux_vector",
    "demux_vector",
    "locate",
    "rotate_mesh_vector",
    "Direct",
    "Interpolated",
    "PhononRef",
    "interpolate_response",
]


# -----------------------------------------------------------------------------
# Flat state index
# -----------------------------------------------------------------------------

def encode_state(band, wavevector, nbands: int):
    """Return flat state index for (*band*, *wavevector*)."""

    band_arr = np.asarray(band)
    wv_arr = np.asarray(wavevector)
    if nbands < 1:
        raise ValueError(f"nbands must be >= 1, got {nbands}")
    if np.any(band_arr < 0) or np.any(band_arr >= nbands):
        raise ValueError(f"Band index out of range [0, {nbands})")
    if np.any(wv_arr < 0):
        raise ValueError("Wave-vector index must be non-negative")

    index = wv_arr * nbands + band_arr
    return int(index) if index.ndim == 0 else index


def decode_state(index, nbands: int):
    """Return (band, wavevector) for flat state *index*."""

    idx = np.asarray(index)
    if nbands < 1:
        raise ValueError(f"nbands must be >= 1, got {nbands}")
    if np.any(idx < 0):
        raise ValueError("State index must be non-negative")

    wavevector, band = np.divmod(idx, nbands)
    if idx.ndim == 0:
        return int(band), int(wavevector)
    return band, wavevector


# -----------------------------------------------------------------------------
# Mesh vectors
# -----------------------------------------------------------------------------

def mux_vector(vec, mesh) -> np.ndarray | int:
    """Return flat full-mesh index of integer mesh vector(s) *vec*.

    *vec* has shape ``(3,)`` or ``(n, 3)``; components are wrapped into the
    mesh before flattening.
    """

    v = np.asarray(vec, dtype=np.int64)
    mesh_t = tuple(int(m) for m in mesh)
    wrapped = np.mod(v, mesh_t)
    index = np.ravel_multi_index(tuple(np.moveaxis(wrapped, -1, 0)), mesh_t)
    return int(index) if np.ndim(index) == 0 else np.asarray(index)


def demux_vector(index, mesh) -> np.ndarray:
    """Return integer mesh vector(s) of flat full-mesh *index* (shape ``(..., 3)``)."""

    mesh_t = tuple(int(m) for m in mesh)
    comps = np.unravel_index(np.asarray(index, dtype=np.int64), mesh_t)
    return np.stack(comps, axis=-1)


def locate(indexlist: np.ndarray, full_indices) -> np.ndarray | int:
    """Binary-search *full_indices* in the sorted *indexlist*.

    Returns the positions of the requested full-mesh points in the list.
    Raises ``KeyError`` if any point is not present – scattering records that
    reference states outside the transport window are treated as corrupt.
    """

    keys = np.asarray(full_indices, dtype=np.int64)
    table = np.asarray(indexlist, dtype=np.int64)
    if table.size == 0:
        raise KeyError("Index list is empty")

    pos = np.searchsorted(table, keys)
    found = (pos < table.size) & (table[np.minimum(pos, table.size - 1)] == keys)
    if not np.all(found):
        missing = np.atleast_1d(keys)[~np.atleast_1d(found)]
        raise KeyError(f"Wave vector(s) {missing[:5].tolist()} not in index list")
    return int(pos) if pos.ndim == 0 else pos


def rotate_mesh_vector(rotation: np.ndarray, vec, mesh) -> np.ndarray:
    """Apply point-group *rotation* (3×3, mesh coordinates) to mesh vector(s)."""

    v = np.asarray(vec, dtype=float)
    rotated = np.rint(v @ np.asarray(rotation, dtype=float).T).astype(np.int64)
    return np.mod(rotated, np.asarray(mesh, dtype=np.int64))


# -----------------------------------------------------------------------------
# Phonon references inside electron-phonon records
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class Direct:
    """Phonon state on the phonon mesh itself."""

    branch: int
    wavevector: int


@dataclass(frozen=True)
class Interpolated:
    """Phonon on the (finer) electron mesh; needs interpolation."""

    branch: int
    fine_point: int


PhononRef = Union[Direct, Interpolated]


def interpolate_response(
    response: np.ndarray,
    coarse_mesh,
    mesh_ref,
    fine_vectors: np.ndarray,
    branches,
) -> np.ndarray:
    """Trilinearly interpolate the phonon *response* onto fine-mesh points.

    Parameters
    ----------
    response
        Phonon response on the full coarse mesh, shape ``(nq, nbranches, 3)``.
    coarse_mesh
        Phonon mesh ``(n1, n2, n3)``.
    mesh_ref
        Per-axis refinement of the fine (electron) mesh over the coarse mesh.
    fine_vectors
        Integer fine-mesh vectors, shape ``(n, 3)``.
    branches
        Phonon branch of every requested point, shape ``(n,)``.

    Returns
    -------
    values
        Array ``(n, 3)``.  Fine points that coincide with coarse-mesh nodes
        reproduce the node values exactly; the mesh is periodic.
    """

    coarse = np.asarray(coarse_mesh, dtype=np.int64)
    ref = np.asarray(mesh_ref, dtype=np.int64)
    fv = np.atleast_2d(np.asarray(fine_vectors, dtype=np.int64))
    s = np.atleast_1d(np.asarray(branches, dtype=np.int64))

    base, rem = np.divmod(fv, ref)
    frac = rem / ref

    values = np.zeros((fv.shape[0], 3))
    for corner in np.ndindex(2, 2, 2):
        offset = np.asarray(corner)
        weight = np.prod(np.where(offset == 1, frac, 1.0 - frac), axis=1)
        if not np.any(weight):
            continue
        iq = mux_vector(base + offset, coarse)
        values += weight[:, None] * response[iq, s, :]
    return values
