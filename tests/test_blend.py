import numpy as np
import pytest

from limoncello.blend import blend_velocity, detect_blends, is_blended
from limoncello.molecule import MolecularSpecies


def _species(name, freqs):
    n_lines = len(freqs)
    return MolecularSpecies(
        name=name,
        weight=28.0,
        energy=np.arange(n_lines + 1, dtype=np.float64),
        g=np.ones(n_lines + 1),
        upper=np.arange(1, n_lines + 1),
        lower=np.arange(n_lines),
        a_ul=np.full(n_lines, 1e-5),
        freq=np.asarray(freqs, dtype=np.float64),
    )


def test_blend_velocity_antisymmetric():
    assert blend_velocity(100e9, 100.001e9) == pytest.approx(-blend_velocity(100.001e9, 100e9))
    assert blend_velocity(100e9, 100.001e9) > 0


def test_detect_blends_across_species():
    a = _species("CO", [100.0e9, 200.0e9])
    b = _species("HCN", [100.002e9])
    blends = detect_blends([a, b], threshold=1e4)
    assert blends.n_pairs == 2
    assert sorted((i, j) for i, j, _ in blends.pairs()) == [(0, 2), (2, 0)]
    dv = {(i, j): v for i, j, v in blends.pairs()}
    assert dv[(0, 2)] == -dv[(2, 0)]
    assert dv[(0, 2)] == pytest.approx(blend_velocity(100.0e9, 100.002e9))
    np.testing.assert_array_equal(blends.ptr, [0, 1, 1, 2])


def test_threshold_is_exclusive():
    f1, f2 = 100.0e9, 100.002e9
    threshold = abs(blend_velocity(f1, f2))
    assert not is_blended(f1, f2, threshold)
    assert not is_blended(f2, f1, threshold)
    assert detect_blends([_species("CO", [f1, f2])], threshold=threshold).n_pairs == 0
    assert detect_blends([_species("CO", [f1, f2])], threshold=threshold * (1 + 1e-9)).n_pairs == 2


def test_no_blends_for_single_line():
    blends = detect_blends([_species("CO", [100e9])])
    assert blends.n_pairs == 0
    np.testing.assert_array_equal(blends.ptr, [0, 0])
