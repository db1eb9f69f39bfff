"""Output artifacts of a BTE solve (one directory per temperature).

Functions implemented:
    temperature_dir(out_dir, T)            – Create ``out_dir/T<T in E9.3 form>``.
    save_rta_rates(dir, prefix, channels, total)
                                           – RTA rate tables ``<prefix>.W_rta_<channel>``
                                             and the Matthiessen total ``<prefix>.W_rta``.
    save_transport_tensors(dir, tensors)   – Converged 3×3 tensors, one text file each.
    IterationTable                         – Tabulated per-iteration scalars, echoed to
                                             stdout and appended to a text file.

All writers are meant to be called by the root worker only.
"""

from __future__ import annotations

import math
from pathlib import Path
from typing import Dict, List, Mapping, Sequence, Tuple

import numpy as np

from . import config as _cfg

__all__ = [
    "format_fortran_e",
    "temperature_dir",
    "save_rta_rates",
    "save_transport_tensors",
    "IterationTable",
]


def format_fortran_e(value: float, decimals: int = 3) -> str:
    """Return *value* in ``0.ddddE±xx`` form, e.g. ``300 -> '0.300E+03'``."""

    if value == 0.0:
        return "0." + "0" * decimals + "E+00"

    exp = int(math.floor(math.log10(abs(value)))) + 1
    mant = f"{value / 10.0 ** exp:.{decimals}f}"
    # Rounding may push the mantissa up to 1.000
    if abs(float(mant)) >= 1.0:
        exp += 1
        mant = f"{value / 10.0 ** exp:.{decimals}f}"
    return f"{mant}E{exp:+03d}"


def temperature_dir(out_dir: str | Path, T: float) -> Path:
    """Create and return the data directory of temperature *T*."""

    path = Path(out_dir).expanduser().absolute() / f"T{format_fortran_e(T)}"
    path.mkdir(parents=True, exist_ok=True)
    return path


def save_rta_rates(
    directory: str | Path,
    prefix: str,
    channels: Mapping[str, np.ndarray],
    total: np.ndarray,
) -> List[Path]:
    """Write the per-channel and total IBZ RTA rates (1/ps) as text tables."""

    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    written = []
    for name, rates in channels.items():
        fname = directory / f"{prefix}.W_rta_{name}"
        np.savetxt(fname, np.atleast_2d(rates), fmt="%.10E")
        written.append(fname)

    fname = directory / f"{prefix}.W_rta"
    np.savetxt(fname, np.atleast_2d(total), fmt="%.10E")
    written.append(fname)
    return written


def save_transport_tensors(directory: str | Path, tensors: Mapping[str, np.ndarray]) -> List[Path]:
    """Write each 3×3 tensor of *tensors* to ``directory/<name>``."""

    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    written = []
    for name, tensor in tensors.items():
        fname = directory / name
        np.savetxt(fname, np.asarray(tensor).reshape(3, 3), fmt="%.10E")
        written.append(fname)
    return written


# -----------------------------------------------------------------------------
# Iteration tables
# -----------------------------------------------------------------------------

class IterationTable:
    """One line of tracked scalars per iteration.

    Parameters
    ----------
    columns
        ``(key, label)`` pairs; *key* indexes the values passed to
        :meth:`add`, *label* is printed in the header.
    path
        Optional text file.  It is truncated by :meth:`start` and one line is
        appended per :meth:`add`.
    echo
        Print header and rows to stdout.
    precision
        Significant digits after the decimal point (defaults to the
        ``table_precision`` config value).
    """

    def __init__(
        self,
        columns: Sequence[Tuple[str, str]],
        *,
        path: str | Path | None = None,
        echo: bool = True,
        precision: int | None = None,
    ):
        if precision is None:
            precision = _cfg.get_param("table_precision")
        self.columns = list(columns)
        self.path = Path(path) if path is not None else None
        self.echo = echo
        self.precision = precision
        self.width = precision + 10
        self.rows: List[Dict[str, float]] = []

    @property
    def keys(self) -> List[str]:
        return [key for key, _ in self.columns]

    def header(self) -> str:
        return "iter" + "".join(f"{label:>{self.width}}" for _, label in self.columns)

    def format_row(self, it: int, values: Mapping[str, float]) -> str:
        cells = "".join(f"{values[key]:>{self.width}.{self.precision}E}" for key in self.keys)
        return f"{it:4d}{cells}"

    def start(self, title: str | None = None) -> None:
        if self.echo:
            if title:
                print(title)
                print("-" * len(title))
            print(self.header())
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w") as fh:
                fh.write(self.header() + "\n")

    def add(self, it: int, values: Mapping[str, float]) -> None:
        row = {"iter": it}
        row.update({key: float(values[key]) for key in self.keys})
        self.rows.append(row)

        line = self.format_row(it, values)
        if self.echo:
            print(line)
        if self.path is not None:
            with open(self.path, "a") as fh:
                fh.write(line + "\n")
