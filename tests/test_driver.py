import numpy as np
import pytest

from limoncello.checkpoint import read_checkpoint, write_checkpoint
from limoncello.config import SolverConfig
from limoncello.driver import PopulationDriver, run_populations
from limoncello.errors import FatalConfigError, PointStatus, SingularSystemError
from limoncello.grid import GridPointStore, line_emissivity_opacity
from limoncello.nlte import LINE_HALF_WIDTH, boltzmann_population, const_hc_on_kB_cm, planck

from conftest import make_chain_store, make_pair_store, make_three_level, make_two_level


def _escape_probability(tau0: float) -> float:
    x = np.linspace(-LINE_HALF_WIDTH, LINE_HALF_WIDTH, 20001)
    phi = np.exp(-x ** 2)
    return float(np.mean(phi * np.exp(-tau0 * phi)) / np.mean(phi))


def test_lte_only(three_level):
    store = make_chain_store(4, 1e12, 1e9, 1e-6, temperature=35.0)
    report = run_populations(store, [three_level], SolverConfig(lte_only=True))
    assert report.sweeps == 0
    assert report.n_converged == 4
    assert report.count(PointStatus.SINK) == 2
    expected = boltzmann_population(three_level.energy, three_level.g, 35.0)
    np.testing.assert_allclose(store.pops[0], np.tile(expected, (6, 1)), rtol=1e-14)


def test_collision_dominated_point_is_thermalised(two_level):
    store = make_pair_store(4e12, 1e14, 1e-9)
    config = SolverConfig(ininphot=200, max_phot=200, tol=1e-3, goal=2, max_iter=4)
    report = run_populations(store, [two_level], config)
    assert report.n_errored == 0
    expected = boltzmann_population(two_level.energy, two_level.g, 20.0)
    np.testing.assert_allclose(store.pops[0][0], expected, rtol=0.02)
    # Sinks keep their LTE populations.
    np.testing.assert_allclose(store.pops[0][1], expected, rtol=1e-14)


def test_two_point_escape_probability():
    species = make_two_level(a_ul=1e-4, k_ul=1e-16)
    density = 1e9
    distance = 4e12
    store = make_pair_store(distance, density, 1e-6)
    config = SolverConfig(ininphot=4000, max_phot=4000, tol=1e-6, goal=1, max_iter=2, seed=11)
    run_populations(store, [species], config)

    pops = store.pops[0][0]
    assert pops.sum() == pytest.approx(1.0, abs=1e-9)
    _, line_a = line_emissivity_opacity(species, pops, store.nmol[0][0], store.binv[0, 0])
    tau0 = line_a[0] * distance / 2
    assert 0.3 < tau0 < 10
    beta = _escape_probability(tau0)

    c_ul = 1e-16 * density
    c_lu = c_ul * 3.0 * np.exp(-const_hc_on_kB_cm * species.energy[1] / 20.0)
    i_bg = planck(species.freq[0], 2.725)
    expected = (c_lu + species.b_lu[0] * beta * i_bg) / (
        species.a_ul[0] * beta + c_ul + species.b_ul[0] * beta * i_bg
    )
    assert pops[1] / pops[0] == pytest.approx(expected, rel=0.05)


def test_zero_density_is_singular_and_skipped(two_level):
    store = make_pair_store(4e12, 0.0, 1e-6)
    report = run_populations(store, [two_level], SolverConfig(ininphot=20, max_phot=20, max_iter=3))
    assert report.n_errored == 1
    assert report[0].status == PointStatus.ERRORED
    assert "SingularSystemError" in report[0].errors[0]
    assert store.status[0] == PointStatus.ERRORED
    # Previous populations are kept.
    np.testing.assert_allclose(
        store.pops[0][0], boltzmann_population(two_level.energy, two_level.g, 2.725)
    )


def test_zero_density_fatal(two_level):
    store = make_pair_store(4e12, 0.0, 1e-6)
    driver = PopulationDriver(store, [two_level], SolverConfig(ininphot=20, max_phot=20, on_singular="fatal"))
    with pytest.raises(SingularSystemError):
        driver.run()
    assert driver.report.aborted
    assert driver.abort.is_set()


def test_unconverged_points_are_exhausted(three_level):
    store = make_chain_store(3, 2e12, 1e9, 1e-5)
    config = SolverConfig(ininphot=10, max_phot=40, tol=1e-9, goal=5, max_iter=2)
    driver = PopulationDriver(store, [three_level], config)
    report = driver.run()
    assert report.sweeps == 2
    assert report.count(PointStatus.EXHAUSTED) == 3
    assert report.n_not_converged == 3
    assert all("NonConvergenceWarning" in report[point].warnings[-1] for point in (1, 2, 3))
    # Every sweep doubled the ray budget.
    assert report[1].nphot == 20
    np.testing.assert_array_equal(driver.nphot[1:4], [40, 40, 40])

    frame = report.to_frame()
    assert frame.height == 5
    assert frame.filter(frame["status"] == "EXHAUSTED").height == 3


def test_mean_change_decreases(three_level):
    store = make_chain_store(4, 2e12, 1e8, 1e-6)
    config = SolverConfig(ininphot=100, max_phot=1600, tol=1e-6, goal=50, max_iter=6, init_lte=True)
    driver = PopulationDriver(store, [three_level], config)
    driver.run()
    assert len(driver.mean_changes) == 6
    assert np.mean(driver.mean_changes[-2:]) < 0.5 * driver.mean_changes[0]
    assert not np.isnan(driver.report[1].snr)


def test_seed_reproducible():
    runs = []
    for _ in range(2):
        store = make_chain_store(4, 2e12, 1e9, 1e-6)
        config = SolverConfig(ininphot=50, max_phot=200, tol=1e-3, goal=2, max_iter=3, n_threads=2, seed=5)
        run_populations(store, [make_three_level()], config)
        runs.append(store.pops[0].copy())
    np.testing.assert_array_equal(runs[0], runs[1])


def test_thread_count_independent_within_noise():
    results = []
    for n_threads in (1, 3):
        store = make_chain_store(6, 2e12, 1e9, 1e-6)
        config = SolverConfig(
            ininphot=1500, max_phot=1500, tol=1e-3, goal=2, max_iter=3, n_threads=n_threads, init_lte=True
        )
        report = run_populations(store, [make_three_level()], config)
        assert report.n_errored == 0
        results.append(store.pops[0].copy())
    np.testing.assert_allclose(results[0], results[1], rtol=0.05)


def test_checkpoint_round_trip_is_idempotent(tmp_path, three_level):
    path = tmp_path / "pops.pickle"
    store = make_chain_store(3, 2e12, 1e9, 1e-6)
    config = SolverConfig(ininphot=30, max_phot=60, tol=1e-3, goal=2, max_iter=2, checkpoint=path)
    run_populations(store, [three_level], config)
    assert path.exists()

    restarted = make_chain_store(3, 2e12, 1e9, 1e-6)
    report = run_populations(
        restarted, [make_three_level()], SolverConfig(max_iter=0, restart=path, checkpoint=tmp_path / "again.pickle")
    )
    assert report.sweeps == 0
    np.testing.assert_array_equal(restarted.pops[0], store.pops[0])

    again = make_chain_store(3, 2e12, 1e9, 1e-6)
    again.attach_species([make_three_level()], SolverConfig())
    read_checkpoint(again, tmp_path / "again.pickle")
    np.testing.assert_array_equal(again.pops[0], store.pops[0])


def test_checkpoint_mismatch(tmp_path, three_level):
    store = make_chain_store(3, 2e12, 1e9, 1e-6)
    store.attach_species([three_level], SolverConfig())
    store.set_lte()
    path = write_checkpoint(store, tmp_path / "pops.pickle")

    other = make_chain_store(4, 2e12, 1e9, 1e-6)
    other.attach_species([make_three_level()], SolverConfig())
    with pytest.raises(FatalConfigError):
        read_checkpoint(other, path)

    other = make_chain_store(3, 2e12, 1e9, 1e-6)
    other.attach_species([make_two_level()], SolverConfig())
    with pytest.raises(FatalConfigError):
        read_checkpoint(other, path)


def test_single_sink_point_keeps_lte(two_level):
    store = GridPointStore(np.zeros((1, 3)), [[]], [True], [1e9], [20.0], [1e-6])
    report = run_populations(store, [two_level], SolverConfig(ininphot=20, max_phot=20, max_iter=3))
    assert report.sweeps == 0
    assert report.count(PointStatus.SINK) == 1
    assert report.n_errored == 0
    np.testing.assert_allclose(store.pops[0][0], boltzmann_population(two_level.energy, two_level.g, 20.0))


def test_fast_exponential_matches_exact_within_tolerance():
    results = []
    for fast_exp in (True, False):
        store = make_chain_store(4, 2e12, 1e9, 1e-6)
        config = SolverConfig(
            ininphot=100, max_phot=400, tol=1e-3, goal=2, max_iter=3, init_lte=True, seed=9, fast_exp=fast_exp
        )
        run_populations(store, [make_three_level()], config)
        results.append(store.pops[0].copy())
    np.testing.assert_allclose(results[0], results[1], rtol=1e-3)
