"""Scattering-table providers: per-state transition-probability records.

The transition probabilities themselves (3-phonon W±, electron–phonon X±,
phonon–electron drag Y) are computed by an external collaborator and can be
far too large to hold in memory.  The BTE iterators therefore only ever ask
for **one initial state at a time**, keyed by its flat state index and the
channel kind.

Two providers are shipped:

* :class:`InMemoryProvider` – dictionary-backed fake used by the tests and
  the synthetic example;
* :class:`NpzTableProvider` – one compressed ``.npz`` file per (kind, state),
  written with :meth:`NpzTableProvider.write` and read lazily.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Tuple

import numpy as np

from .states import Direct, Interpolated, PhononRef, decode_state, encode_state

__all__ = [
    "ChannelKind",
    "TransitionRecords",
    "ScatteringTableProvider",
    "InMemoryProvider",
    "NpzTableProvider",
]


class ChannelKind(Enum):
    """Kinds of per-state transition-probability tables."""

    PH_PLUS = "Wp"       # 3-phonon, plus processes
    PH_MINUS = "Wm"      # 3-phonon, minus processes
    PH_DRAG = "Y"        # phonon -> electron pair (drag)
    EL_PLUS = "Xplus"    # electron-phonon, absorption
    EL_MINUS = "Xminus"  # electron-phonon, emission


@dataclass
class TransitionRecords:
    """Sparse scattering records of one initial state.

    ``weights[i]`` is the channel weight of process *i* and ``partner1[i]``,
    ``partner2[i]`` the flat state indices of its two partner states.  For
    electron–phonon records ``partner2`` is a phonon state; where
    ``interpolated[i]`` is set its wave-vector part is a point on the fine
    (electron) mesh rather than on the phonon mesh.
    """

    weights: np.ndarray
    partner1: np.ndarray
    partner2: np.ndarray
    interpolated: np.ndarray | None = None

    def __post_init__(self):
        self.weights = np.asarray(self.weights, dtype=float).ravel()
        self.partner1 = np.asarray(self.partner1, dtype=np.int64).ravel()
        self.partner2 = np.asarray(self.partner2, dtype=np.int64).ravel()
        if self.interpolated is None:
            self.interpolated = np.zeros(self.weights.shape, dtype=bool)
        else:
            self.interpolated = np.asarray(self.interpolated, dtype=bool).ravel()

        n = self.weights.size
        if not (self.partner1.size == self.partner2.size == self.interpolated.size == n):
            raise ValueError("Transition record arrays must have equal lengths")
        if np.any(self.partner1 < 0) or np.any(self.partner2 < 0):
            raise ValueError("Partner state indices must be non-negative")

    def __len__(self) -> int:
        return self.weights.size

    @classmethod
    def empty(cls) -> "TransitionRecords":
        return cls(np.empty(0), np.empty(0, np.int64), np.empty(0, np.int64))

    @classmethod
    def from_refs(
        cls,
        weights: Iterable[float],
        electron_states: Iterable[int],
        phonon_refs: Iterable[PhononRef],
        nbranches: int,
    ) -> "TransitionRecords":
        """Build electron–phonon records from tagged phonon references."""

        refs = list(phonon_refs)
        partner2 = []
        flags = []
        for ref in refs:
            if isinstance(ref, Direct):
                partner2.append(encode_state(ref.branch, ref.wavevector, nbranches))
                flags.append(False)
            elif isinstance(ref, Interpolated):
                partner2.append(encode_state(ref.branch, ref.fine_point, nbranches))
                flags.append(True)
            else:
                raise TypeError(f"Unknown phonon reference {ref!r}")
        return cls(
            np.fromiter(weights, dtype=float),
            np.fromiter(electron_states, dtype=np.int64),
            np.asarray(partner2, dtype=np.int64),
            np.asarray(flags, dtype=bool),
        )

    def phonon_refs(self, nbranches: int) -> Iterator[PhononRef]:
        """Yield the tagged phonon reference of every process."""

        branches, wavevectors = decode_state(self.partner2, nbranches)
        for s, q, interp in zip(branches, wavevectors, self.interpolated):
            if interp:
                yield Interpolated(int(s), int(q))
            else:
                yield Direct(int(s), int(q))


# -----------------------------------------------------------------------------
# Provider interface
# -----------------------------------------------------------------------------

class ScatteringTableProvider(abc.ABC):
    """Read-only source of per-state transition-probability records."""

    @abc.abstractmethod
    def fetch(self, kind: ChannelKind, state_index: int) -> TransitionRecords:
        """Return the records of *kind* for initial state *state_index*."""


class InMemoryProvider(ScatteringTableProvider):
    """Dictionary-backed provider; states without an entry scatter nowhere."""

    def __init__(self, tables: Dict[Tuple[ChannelKind, int], TransitionRecords] | None = None):
        self._tables: Dict[Tuple[ChannelKind, int], TransitionRecords] = dict(tables or {})
        self.n_fetches = 0

    def add(self, kind: ChannelKind, state_index: int, records: TransitionRecords) -> None:
        self._tables[(kind, int(state_index))] = records

    def fetch(self, kind: ChannelKind, state_index: int) -> TransitionRecords:
        self.n_fetches += 1
        return self._tables.get((kind, int(state_index)), TransitionRecords.empty())


class NpzTableProvider(ScatteringTableProvider):
    """On-disk provider storing ``<root>/<kind>.istate<N>.npz`` per state.

    Both electron–phonon kinds (X+ and X-) live in the **same** per-state file
    ``X.istate<N>.npz``: the plus read returns the X+ weights, the minus read
    the X- weights, both paired with the same partners.
    """

    _X_FILE = "X"

    def __init__(self, root: str | Path):
        self.root = Path(root).expanduser()

    def _path(self, kind: ChannelKind, state_index: int) -> Path:
        stem = self._X_FILE if kind in (ChannelKind.EL_PLUS, ChannelKind.EL_MINUS) else kind.value
        return self.root / f"{stem}.istate{int(state_index)}.npz"

    def write(
        self,
        kind: ChannelKind,
        state_index: int,
        records: TransitionRecords,
        *,
        minus_weights: np.ndarray | None = None,
    ) -> Path:
        """Persist *records*; for X tables also pass the X- weights."""

        if kind is ChannelKind.EL_MINUS:
            raise ValueError("Write X tables once, with ChannelKind.EL_PLUS and minus_weights")
        payload = {
            "weights": records.weights,
            "partner1": records.partner1,
            "partner2": records.partner2,
            "interpolated": records.interpolated,
        }
        if kind is ChannelKind.EL_PLUS:
            if minus_weights is None:
                raise ValueError("X tables require both X+ and X- weights")
            minus = np.asarray(minus_weights, dtype=float).ravel()
            if minus.shape != records.weights.shape:
                raise ValueError("X- weights must match X+ records")
            payload["weights_minus"] = minus

        self.root.mkdir(parents=True, exist_ok=True)
        path = self._path(kind, state_index)
        np.savez_compressed(path, **payload)
        return path

    def fetch(self, kind: ChannelKind, state_index: int) -> TransitionRecords:
        path = self._path(kind, state_index)
        if not path.exists():
            raise FileNotFoundError(f"Missing scattering table {path}")

        with np.load(path, allow_pickle=False) as saved:
            if kind is ChannelKind.EL_MINUS:
                weights = saved["weights_minus"]
            else:
                weights = saved["weights"]
            return TransitionRecords(
                weights,
                saved["partner1"],
                saved["partner2"],
                saved["interpolated"],
            )

    def states(self, kind: ChannelKind) -> List[int]:
        """Return the sorted state indices stored for *kind*."""

        stem = self._X_FILE if kind in (ChannelKind.EL_PLUS, ChannelKind.EL_MINUS) else kind.value
        found = []
        for p in self.root.glob(f"{stem}.istate*.npz"):
            found.append(int(p.name[len(stem) + len(".istate"):-len(".npz")]))
        return sorted(found)
