import numpy as np
import pytest

from coupled_bte.partition import ThreadGroup
from coupled_bte.scattering import ChannelKind, InMemoryProvider, TransitionRecords
from coupled_bte.solver import (
    ConvergenceTracker,
    SolveStatus,
    has_converged,
    ko_deviation,
    solve_bte,
)
from coupled_bte.system import CoupledDrag, Crystal, Decoupled, ElectronSystem, PhononSystem
from coupled_bte.transport import occupation_derivative
from coupled_bte.synthetic import identity_symmetry

from conftest import build_electrons


def test_has_converged_is_strict():
    assert has_converged(0.0, 0.25, 0.5)
    assert has_converged(1.0, 0.75, 0.5)
    assert not has_converged(0.0, 0.5, 0.5)
    assert not has_converged(0.5, -0.5, 0.5)


def _iterations_until_converged(names, thres=1e-3):
    tracker = ConvergenceTracker(names, thres, initial={"fast": 10.0, "slow": 10.0})
    for n in range(1, 100):
        values = {"fast": 10.0 * 0.1 ** n, "slow": 10.0 * 0.5 ** n}
        if tracker.update(values):
            return n
    return None


def test_slowest_scalar_decides_convergence():
    assert _iterations_until_converged(["fast"]) == 5
    assert _iterations_until_converged(["slow"]) == 14
    assert _iterations_until_converged(["fast", "slow"]) == 14


def test_tracker_keeps_old_values_only_on_failure():
    tracker = ConvergenceTracker(["a"], 0.1)
    assert not tracker.update({"a": 1.0})
    assert not tracker.update({"a": 2.0})
    assert tracker.old == {"a": 2.0}
    assert tracker.update({"a": 2.05})
    assert tracker.old == {"a": 2.0}


def test_ko_deviation():
    assert ko_deviation(1.1, 0.6, 0.4) == pytest.approx(10.0)
    assert ko_deviation(1.0, 0.6, 0.4) == 0.0
    assert ko_deviation(1.0 + 1e-12, 0.6, 0.4) == 0.0
    assert np.isnan(ko_deviation(1.0, 0.0, 0.0))


def test_decoupled_phonons_without_scattering_converge_immediately(phonons, ph_rates):
    crystal = Crystal(T=300.0, volume=0.04)
    result = solve_bte(
        crystal, phonons, Decoupled(phbte=True, ebte=False),
        ph_rate_channels=ph_rates, provider=InMemoryProvider(), verbose=False,
    )

    loop = result.loops["ph"]
    assert loop.status is SolveStatus.CONVERGED
    assert loop.iterations == 1
    assert result.converged
    assert len(result.history["ph"]) == 2
    assert set(result.tensors) == {"ph_kappa", "ph_alphabyT"}

    ctx = result.context
    assert np.array_equal(ctx.ph_response_T, ctx.ph_field_term_T)
    assert ctx.ph_response_T is not ctx.ph_field_term_T
    assert not ctx.ph_response_E.any()
    assert ctx.el_response_T is None
    assert np.allclose(ctx.ph_rta_rates_ibz, ph_rates["anh"] + ph_rates["bound"])


def test_decoupled_solve_converges_and_keeps_kelvin_onsager(phonons, electrons, provider, ph_rates, el_rates):
    crystal = Crystal(T=300.0, volume=0.04)
    result = solve_bte(
        crystal, phonons, Decoupled(electrons),
        ph_rate_channels=ph_rates, el_rate_channels=el_rates, provider=provider,
        maxiter=200, verbose=False,
    )

    assert set(result.loops) == {"ph", "el"}
    assert result.converged
    s = result.scalars
    assert s["el_sigmaS"] == pytest.approx(s["el_alphabyT"], rel=1e-8)
    assert s["ph_alphabyT"] == 0.0
    assert result.history["el"][-1]["iter"] == result.loops["el"].iterations


def test_iteration_zero_reports_rta_coefficients(phonons, electrons, provider, ph_rates, el_rates):
    crystal = Crystal(T=300.0, volume=0.04)
    rta = solve_bte(
        crystal, phonons, Decoupled(electrons),
        ph_rate_channels=ph_rates, el_rate_channels=el_rates, provider=InMemoryProvider(),
        verbose=False,
    )
    full = solve_bte(
        crystal, phonons, Decoupled(electrons),
        ph_rate_channels=ph_rates, el_rate_channels=el_rates, provider=provider,
        maxiter=3, verbose=False,
    )

    for loop in ("ph", "el"):
        assert full.history[loop][0] == rta.history[loop][0]
    assert full.history["el"][0]["el_sigmaS"] == pytest.approx(rta.scalars["el_sigmaS"])


def test_maxiter_is_a_status_not_an_error(phonons, provider, ph_rates):
    crystal = Crystal(T=300.0, volume=0.04)
    result = solve_bte(
        crystal, phonons, Decoupled(phbte=True, ebte=False),
        ph_rate_channels=ph_rates, provider=provider, maxiter=1, conv_thres=1e-30, verbose=False,
    )

    assert result.loops["ph"].status is SolveStatus.MAXITER_REACHED
    assert result.loops["ph"].iterations == 1
    assert not result.converged


def test_coupled_drag_is_independent_of_worker_count(phonons, electrons, provider, ph_rates, el_rates):
    crystal = Crystal(T=300.0, volume=0.04)
    kwargs = dict(
        ph_rate_channels=ph_rates, el_rate_channels=el_rates, provider=provider,
        maxiter=4, verbose=False,
    )

    serial = solve_bte(crystal, phonons, CoupledDrag(electrons), **kwargs)
    assert set(serial.loops) == {"drag", "drag_el"}
    assert serial.loops["drag"].status in (SolveStatus.CONVERGED, SolveStatus.MAXITER_REACHED)
    assert "ko_dev" in serial.history["drag"][0]
    assert serial.history["drag"][0]["ko_dev"] == 0.0

    results = ThreadGroup(3).run(lambda comm: solve_bte(crystal, phonons, CoupledDrag(electrons), comm=comm, **kwargs))
    for res in results:
        for key, tensor in serial.tensors.items():
            assert np.allclose(res.tensors[key], tensor)


def test_solve_writes_temperature_directory(tmp_path, phonons, electrons, provider, ph_rates, el_rates):
    crystal = Crystal(T=300.0, volume=0.04)
    result = solve_bte(
        crystal, phonons, Decoupled(electrons),
        ph_rate_channels=ph_rates, el_rate_channels=el_rates, provider=provider,
        out_dir=tmp_path, maxiter=3, verbose=False,
    )

    tdir = tmp_path / "T0.300E+03"
    assert result.out_dir == tdir
    for name in ("ph.W_rta_anh", "ph.W_rta_bound", "ph.W_rta", "el.W_rta_eph", "el.W_rta",
                 "ph_iterations.txt", "el_iterations.txt", "ph_kappa", "el_sigma"):
        assert (tdir / name).exists(), name

    lines = (tdir / "ph_iterations.txt").read_text().splitlines()
    assert lines[0].startswith("iter")
    assert len(lines) == 1 + len(result.history["ph"])
    assert np.allclose(np.loadtxt(tdir / "ph.W_rta"), ph_rates["anh"] + ph_rates["bound"])


def test_only_root_worker_reports(capsys, phonons, ph_rates):
    crystal = Crystal(T=300.0, volume=0.04)
    ThreadGroup(3).run(lambda comm: solve_bte(
        crystal, phonons, Decoupled(phbte=True, ebte=False),
        ph_rate_channels=ph_rates, provider=InMemoryProvider(), comm=comm, verbose=True,
    ))

    out = capsys.readouterr().out
    assert out.count("Decoupled phonon transport") == 2
    assert out.count("[RTA]") == 1


def test_invalid_configurations_are_rejected(phonons, electrons, ph_rates, el_rates):
    crystal = Crystal(T=300.0, volume=0.04)
    provider = InMemoryProvider()

    with pytest.raises(ValueError):
        solve_bte(crystal, phonons, Decoupled(), ph_rate_channels=ph_rates, provider=provider)
    with pytest.raises(ValueError):
        solve_bte(crystal, phonons, Decoupled(electrons), ph_rate_channels=ph_rates, provider=provider)
    with pytest.raises(ValueError):
        solve_bte(crystal, phonons, Decoupled(phbte=False, ebte=False),
                  ph_rate_channels=ph_rates, provider=provider)
    with pytest.raises(ValueError):
        solve_bte(crystal, phonons, Decoupled(phbte=True, ebte=False),
                  ph_rate_channels={}, provider=provider)
    with pytest.raises(TypeError):
        solve_bte(crystal, phonons, electrons, ph_rate_channels=ph_rates, provider=provider)

    coarse = build_electrons(mesh=(4, 2, 1))
    with pytest.raises(ValueError):
        solve_bte(crystal, phonons, CoupledDrag(coarse), ph_rate_channels=ph_rates,
                  el_rate_channels=el_rates, provider=provider)


def test_ibz_must_cover_every_fbz_point_once():
    # both IBZ points claim FBZ point 0, point 1 is orphaned
    ph = PhononSystem(
        (2, 1, 1), [[0.01], [0.02]], np.ones((2, 1, 3)),
        [np.array([[0, 0]]), np.array([[0, 0]])], np.arange(2)[None, :], np.tile(np.eye(3), (2, 1, 1)),
    )
    with pytest.raises(ValueError, match="not covered exactly once"):
        solve_bte(Crystal(T=300.0, volume=0.04), ph, Decoupled(phbte=True, ebte=False),
                  ph_rate_channels={"anh": np.ones((2, 1))}, provider=InMemoryProvider(), verbose=False)


def _reciprocal_drag_pair(T, x=1.0, el_rate=10.0, ph_rate=5.0):
    """Two counter-propagating electrons and phonons with reciprocal drag weights.

    Electron k scatters (rate x) off the phonon moving against it, phonon q
    is dragged by both electrons.  With ``y = x D_el / (2 D_ph)`` the coupled
    fixed point satisfies Kelvin-Onsager at lambda = 1.
    """

    e, w = 0.02, 0.03
    ibz2fbz, equiv_map, symmetrizers = identity_symmetry(2)
    phonons = PhononSystem((2, 1, 1), [[w], [w]], [[[5.0, 0.0, 0.0]], [[-5.0, 0.0, 0.0]]],
                           ibz2fbz, equiv_map, symmetrizers)
    electrons = ElectronSystem(
        (2, 1, 1), [[e], [e]], [[[100.0, 0.0, 0.0]], [[-100.0, 0.0, 0.0]]], [0, 1],
        ibz2fbz, equiv_map, symmetrizers, [[e], [e]], chempot=0.0, enref=0.0, fsthick=1.0,
    )

    d_el = occupation_derivative("el", np.array(e), 0.0, T)
    d_ph = occupation_derivative("ph", np.array(w), 0.0, T)
    y = x * d_el / (2.0 * d_ph)

    provider = InMemoryProvider()
    for k in (0, 1):
        plus = TransitionRecords([0.8 * x], [k], [1 - k])
        provider.add(ChannelKind.EL_PLUS, k, plus)
        provider.add(ChannelKind.EL_MINUS, k, TransitionRecords([0.2 * x], plus.partner1, plus.partner2))
        provider.add(ChannelKind.PH_DRAG, k, TransitionRecords([y], [1 - k], [k]))

    rates = {
        "ph": {"anh": np.full((2, 1), ph_rate)},
        "el": {"eph": np.full((2, 1), el_rate)},
    }
    return phonons, electrons, provider, rates


def test_coupled_drag_restores_kelvin_onsager(capsys):
    crystal = Crystal(T=300.0, volume=0.04)
    phonons, electrons, provider, rates = _reciprocal_drag_pair(crystal.T)

    result = solve_bte(
        crystal, phonons, CoupledDrag(electrons),
        ph_rate_channels=rates["ph"], el_rate_channels=rates["el"], provider=provider,
        maxiter=100, verbose=True,
    )

    assert "[KO] Bisection stopped" not in capsys.readouterr().out
    assert result.loops["drag"].status is SolveStatus.CONVERGED
    assert result.loops["drag_el"].status is SolveStatus.CONVERGED

    last = result.history["drag"][-1]
    assert last["ph_alphabyT"] > 0.0
    assert last["ko_dev"] == pytest.approx(0.0, abs=1e-4)
    assert last["el_sigmaS"] == pytest.approx(last["el_alphabyT"] + last["ph_alphabyT"], rel=1e-8)
