import math

import numpy as np
import pytest

from limoncello.nlte import (
    boltzmann_population,
    build_fast_exp_table,
    calc_einstein_b_lu,
    calc_einstein_b_ul,
    const_2_h_on_c_sq,
    const_hc_on_kB_cm,
    doppler_binv,
    fast_exp_neg,
    planck,
    remnant_source,
)


def test_planck_zero_temperature():
    assert planck(115.27e9, 0.0) == 0.0


def test_planck_rayleigh_jeans_limit():
    freq = 1e9
    temperature = 1000.0
    rj = 2 * freq ** 2 * 1.380649e-23 * temperature / 299792458.0 ** 2
    assert planck(freq, temperature) == pytest.approx(rj, rel=1e-4)


def test_einstein_coefficients():
    a_ul = np.array([1e-4])
    freq = np.array([1e11])
    b_ul = calc_einstein_b_ul(a_ul, freq)
    assert b_ul[0] == pytest.approx(1e-4 / (const_2_h_on_c_sq * 1e33))
    assert calc_einstein_b_lu(b_ul, np.array([3.0]), np.array([1.0]))[0] == pytest.approx(3 * b_ul[0])


def test_boltzmann_population_normalised():
    energy = np.array([0.0, 3.845, 11.535])
    g = np.array([1.0, 3.0, 5.0])
    pops = boltzmann_population(energy, g, 20.0)
    assert pops.shape == (3,)
    assert pops.sum() == pytest.approx(1.0, abs=1e-14)
    assert pops[1] / pops[0] == pytest.approx(3 * math.exp(-const_hc_on_kB_cm * 3.845 / 20.0))


def test_boltzmann_population_array_and_zero_temperature():
    energy = np.array([0.0, 3.845, 11.535])
    g = np.array([1.0, 3.0, 5.0])
    pops = boltzmann_population(energy, g, np.array([0.0, 10.0, 1e5]))
    assert pops.shape == (3, 3)
    np.testing.assert_array_equal(pops[0], [1.0, 0.0, 0.0])
    np.testing.assert_allclose(pops[2], g / g.sum(), rtol=1e-3)


def test_fast_exp_accuracy():
    table = build_fast_exp_table(num_bits=8, x_max=30.0)
    for x in np.linspace(0.0, 29.9, 997):
        assert fast_exp_neg(x, table, 8, 3) == pytest.approx(math.exp(-x), rel=1e-10)


def test_fast_exp_outside_table():
    table = build_fast_exp_table(num_bits=8, x_max=5.0)
    assert fast_exp_neg(12.0, table, 8, 3) == math.exp(-12.0)
    assert fast_exp_neg(-1.5, table, 8, 3) == math.exp(1.5)


def test_remnant_source_taylor_branch_matches_exact():
    dtau = 9e-4
    exact = (1 - math.exp(-dtau)) / dtau
    assert remnant_source(dtau, math.exp(-dtau), 1e-3) == pytest.approx(exact, rel=1e-9)
    dtau = 2.0
    assert remnant_source(dtau, math.exp(-dtau), 1e-3) == pytest.approx((1 - math.exp(-2.0)) / 2.0)


def test_doppler_binv():
    binv = doppler_binv(np.array([0.0, 20.0]), np.array([0.0, 0.0]), 28.0)
    assert binv[0] == 0.0
    b = math.sqrt(2 * 1.380649e-23 * 20.0 / (28.0 * 1.66053906660e-27))
    assert binv[1] == pytest.approx(1 / b, rel=1e-6)
