import numpy as np
import pytest

from limoncello.errors import SingularSystemError
from limoncello.molecule import MolecularSpecies
from limoncello.nlte import boltzmann_population, const_c, planck
from limoncello.statequil import build_rate_matrix, check_populations, solve_populations


def _partner_rates(species, temperature):
    return [(down[0], up[0]) for down, up in species.collision_rates(np.array([temperature]))]


def test_rows_sum_to_zero(three_level):
    jbar = np.array([3e-18, 7e-18])
    rates = build_rate_matrix(three_level, jbar, np.array([1e10]), _partner_rates(three_level, 20.0))
    np.testing.assert_allclose(rates.sum(axis=1), 0.0, atol=1e-12 * np.abs(rates).max())
    assert np.all(rates[~np.eye(3, dtype=bool)] >= 0)


def test_radiative_and_collisional_terms(two_level):
    jbar = np.array([2e-18])
    density = np.array([1e9])
    (down, up), = _partner_rates(two_level, 20.0)
    rates = build_rate_matrix(two_level, jbar, density, [(down, up)])
    assert rates[1, 0] == pytest.approx(1e-4 + two_level.b_ul[0] * 2e-18 + down[0] * 1e9)
    assert rates[0, 1] == pytest.approx(two_level.b_lu[0] * 2e-18 + up[0] * 1e9)


@pytest.mark.parametrize("temperature", [5.0, 20.0, 80.0])
def test_lte_recovered_exactly(three_level, temperature):
    # Line frequencies consistent with the level energies.
    three_level = MolecularSpecies(
        name=three_level.name,
        weight=three_level.weight,
        energy=three_level.energy,
        g=three_level.g,
        upper=three_level.upper,
        lower=three_level.lower,
        a_ul=three_level.a_ul,
        freq=100 * const_c * (three_level.energy[three_level.upper] - three_level.energy[three_level.lower]),
        collisions=three_level.collisions,
    )
    jbar = np.array([planck(nu, temperature) for nu in three_level.freq])
    rates = build_rate_matrix(
        three_level, jbar, np.array([1e8]), _partner_rates(three_level, temperature)
    )
    pops = solve_populations(rates, 0, three_level.name, 1e-14)
    np.testing.assert_allclose(
        pops, boltzmann_population(three_level.energy, three_level.g, temperature), rtol=1e-9
    )


def test_populations_sum_to_one(three_level):
    rng = np.random.default_rng(7)
    for _ in range(20):
        jbar = rng.uniform(0, 1e-17, 2)
        density = np.array([10 ** rng.uniform(6, 12)])
        rates = build_rate_matrix(three_level, jbar, density, _partner_rates(three_level, rng.uniform(5, 60)))
        pops = solve_populations(rates, 0, three_level.name, 1e-14)
        assert pops.sum() == pytest.approx(1.0, abs=1e-12)
        assert np.all(pops > 0)


def test_disconnected_level_is_singular():
    species = MolecularSpecies(
        name="CO", weight=28.0, energy=np.array([0.0, 1.0, 2.0]), g=np.array([1.0, 3.0, 5.0]),
        upper=np.array([1]), lower=np.array([0]), a_ul=np.array([1e-4]), freq=np.array([1e11]),
    )
    rates = build_rate_matrix(species, np.array([0.0]), np.zeros(0), [])
    with pytest.raises(SingularSystemError) as exc_info:
        solve_populations(rates, 12, species.name, 1e-14)
    assert exc_info.value.point == 12
    assert exc_info.value.species == "CO"


def test_check_populations_clamps_and_renormalises():
    pops, message = check_populations(np.array([0.7, 0.4, -0.1]), 1e-9, 1e-30)
    assert message is not None
    assert pops.sum() == pytest.approx(1.0)
    assert pops[2] == pytest.approx(1e-30 / 1.1)

    pops, message = check_populations(np.array([0.25, 0.75]), 1e-9, 1e-30)
    assert message is None
    np.testing.assert_allclose(pops, [0.25, 0.75])
