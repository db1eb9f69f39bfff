import numpy as np
import pytest

from coupled_bte.scattering import (
    ChannelKind,
    InMemoryProvider,
    NpzTableProvider,
    TransitionRecords,
)
from coupled_bte.states import Direct, Interpolated
from coupled_bte.synthetic import random_provider


def test_records_validate_lengths_and_partners():
    with pytest.raises(ValueError):
        TransitionRecords([0.1, 0.2], [0], [1, 2])
    with pytest.raises(ValueError):
        TransitionRecords([0.1], [-1], [0])

    rec = TransitionRecords([0.1, 0.2], [0, 1], [1, 2])
    assert len(rec) == 2
    assert not rec.interpolated.any()
    assert len(TransitionRecords.empty()) == 0


def test_records_keep_phonon_reference_tags():
    refs = [Direct(1, 4), Interpolated(0, 9), Direct(2, 0)]
    rec = TransitionRecords.from_refs([0.1, 0.2, 0.3], [3, 5, 7], refs, nbranches=3)

    assert np.array_equal(rec.partner2, [13, 27, 2])
    assert np.array_equal(rec.interpolated, [False, True, False])
    assert list(rec.phonon_refs(3)) == refs


def test_in_memory_provider_returns_empty_records_for_unknown_states():
    provider = InMemoryProvider()
    provider.add(ChannelKind.PH_PLUS, 0, TransitionRecords([0.5], [1], [2]))

    assert len(provider.fetch(ChannelKind.PH_PLUS, 0)) == 1
    assert len(provider.fetch(ChannelKind.PH_MINUS, 0)) == 0
    assert len(provider.fetch(ChannelKind.PH_PLUS, 7)) == 0
    assert provider.n_fetches == 3


def test_npz_provider_stores_one_file_per_state(tmp_path):
    provider = NpzTableProvider(tmp_path)
    rec = TransitionRecords([0.1, 0.2], [3, 4], [5, 6])
    path = provider.write(ChannelKind.PH_MINUS, 4, rec)

    assert path.name == "Wm.istate4.npz"
    loaded = provider.fetch(ChannelKind.PH_MINUS, 4)
    assert np.allclose(loaded.weights, rec.weights)
    assert np.array_equal(loaded.partner1, rec.partner1)
    assert np.array_equal(loaded.partner2, rec.partner2)
    assert provider.states(ChannelKind.PH_MINUS) == [4]


def test_npz_provider_shares_x_tables_between_plus_and_minus(tmp_path):
    provider = NpzTableProvider(tmp_path)
    plus = TransitionRecords.from_refs([0.1, 0.2], [0, 1], [Direct(0, 1), Interpolated(1, 3)], 2)
    path = provider.write(ChannelKind.EL_PLUS, 2, plus, minus_weights=[0.7, 0.8])

    assert path.name == "X.istate2.npz"
    xp = provider.fetch(ChannelKind.EL_PLUS, 2)
    xm = provider.fetch(ChannelKind.EL_MINUS, 2)
    assert np.allclose(xp.weights, [0.1, 0.2])
    assert np.allclose(xm.weights, [0.7, 0.8])
    assert np.array_equal(xm.partner2, xp.partner2)
    assert np.array_equal(xm.interpolated, [False, True])
    assert provider.states(ChannelKind.EL_MINUS) == [2]


def test_npz_provider_rejects_incomplete_x_tables(tmp_path):
    root = tmp_path / "tables"
    provider = NpzTableProvider(root)
    rec = TransitionRecords([0.1], [0], [0])
    with pytest.raises(ValueError):
        provider.write(ChannelKind.EL_PLUS, 0, rec)
    with pytest.raises(ValueError):
        provider.write(ChannelKind.EL_MINUS, 0, rec)
    with pytest.raises(ValueError):
        provider.write(ChannelKind.EL_PLUS, 0, rec, minus_weights=[0.1, 0.2])
    assert not root.exists()


def test_npz_provider_missing_table_is_fatal(tmp_path):
    provider = NpzTableProvider(tmp_path)
    with pytest.raises(FileNotFoundError):
        provider.fetch(ChannelKind.PH_DRAG, 0)


def test_random_provider_fills_every_irreducible_state(phonons, electrons):
    provider = random_provider(phonons, electrons, nproc=4, seed=5, drag_weight=0.01)

    for istate in range(phonons.n_irred * phonons.nbands):
        drag = provider.fetch(ChannelKind.PH_DRAG, istate)
        assert len(drag) == 4
        assert np.all((drag.weights >= 0.0) & (drag.weights < 0.01))
        assert drag.partner2.max() < electrons.nk * electrons.nbands
    for istate in range(electrons.n_irred * electrons.nbands):
        plus = provider.fetch(ChannelKind.EL_PLUS, istate)
        minus = provider.fetch(ChannelKind.EL_MINUS, istate)
        assert np.array_equal(plus.partner1, minus.partner1)
        assert np.array_equal(plus.partner2, minus.partner2)

    again = random_provider(phonons, electrons, nproc=4, seed=5, drag_weight=0.01)
    assert np.array_equal(again.fetch(ChannelKind.PH_PLUS, 0).weights, provider.fetch(ChannelKind.PH_PLUS, 0).weights)
