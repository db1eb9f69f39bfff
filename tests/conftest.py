import sys
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from coupled_bte.synthetic import identity_symmetry, random_provider, random_rates
from coupled_bte.system import ElectronSystem, PhononSystem


def build_phonons(mesh=(2, 2, 1), nbranches=2, seed=0):
    rng = np.random.default_rng(seed)
    n = int(np.prod(mesh))
    ibz2fbz, equiv_map, symmetrizers = identity_symmetry(n)
    energies = rng.uniform(0.01, 0.05, (n, nbranches))
    velocities = rng.normal(0.0, 5.0, (n, nbranches, 3))
    return PhononSystem(mesh, energies, velocities, ibz2fbz, equiv_map, symmetrizers)


def build_electrons(mesh=(2, 2, 1), nbands=1, chempot=0.0, seed=1):
    rng = np.random.default_rng(seed)
    n = int(np.prod(mesh))
    ibz2fbz, equiv_map, symmetrizers = identity_symmetry(n)
    energies = chempot + rng.uniform(-0.08, 0.08, (n, nbands))
    velocities = rng.normal(0.0, 50.0, (n, nbands, 3))
    return ElectronSystem(
        mesh,
        energies,
        velocities,
        indexlist=np.arange(n),
        ibz2fbz=ibz2fbz,
        equiv_map=equiv_map,
        symmetrizers=symmetrizers,
        energies_irred=energies.copy(),
        chempot=chempot,
        enref=chempot,
        fsthick=1.0,
    )


@pytest.fixture
def phonons():
    return build_phonons()


@pytest.fixture
def electrons():
    return build_electrons()


@pytest.fixture
def provider(phonons, electrons):
    return random_provider(phonons, electrons)


@pytest.fixture
def ph_rates(phonons):
    return random_rates(phonons, ("anh", "bound"), 1.0)


@pytest.fixture
def el_rates(electrons):
    return random_rates(electrons, ("eph", "imp"), 2.0, seed=4)
