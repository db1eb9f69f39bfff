import numpy as np
import pytest
from scipy.constants import elementary_charge as qe

from coupled_bte import config
from coupled_bte.drag import correct_phonon_drag, split_electron_response


def test_bisection_finds_lambda_for_linear_response():
    k, c = 3.0, 1.2
    corr = correct_phonon_drag(lambda lam: k * lam, c)

    assert corr.converged
    assert abs(k * corr.lam - c) < 1e-6
    assert 0.0 <= corr.lam <= 2.0


def test_bisection_exits_on_first_hit():
    corr = correct_phonon_drag(lambda lam: 3.0 * lam, 1.5)
    assert corr.lam == 0.5
    assert corr.iterations == 2


def test_bisection_never_leaves_bracket():
    seen = []

    def sigma_s(lam):
        seen.append(lam)
        return 1.0 * lam

    corr = correct_phonon_drag(sigma_s, 5.0)

    assert not corr.converged
    assert corr.iterations == 100
    assert len(seen) == 100
    assert all(0.0 <= lam <= 2.0 for lam in seen)
    assert corr.lam == seen[-1]
    assert corr.lam == pytest.approx(2.0)


def test_bisection_reads_defaults_from_config():
    old = config.get_param("ko_maxiter")
    config.set_param("ko_maxiter", 5)
    try:
        corr = correct_phonon_drag(lambda lam: lam, 10.0)
    finally:
        config.set_param("ko_maxiter", old)
    assert corr.iterations == 5


def test_bisection_rejects_bad_bracket():
    with pytest.raises(ValueError):
        correct_phonon_drag(lambda lam: lam, 1.0, bracket=(2.0, 0.0))


def test_split_electron_response(electrons):
    T = 200.0
    rng = np.random.default_rng(8)
    response_T = rng.normal(size=electrons.velocities.shape)
    response_E = qe * rng.normal(size=electrons.velocities.shape)

    I_el, I_ph = split_electron_response(response_T, response_E, electrons, T)

    expected = ((electrons.energies - electrons.chempot) / (qe * T))[..., None] * response_E
    assert np.allclose(I_el, expected)
    assert np.allclose(I_el + I_ph, response_T)
    assert np.array_equal(I_ph, response_T - I_el)

    with pytest.raises(ValueError):
        split_electron_response(response_T[:1], response_E, electrons, T)
