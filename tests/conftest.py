import os
import tempfile

os.environ.setdefault("LIMONCELLO_OUTPUT_DIR", tempfile.mkdtemp(prefix="limoncello-tests-"))

import numpy as np
import pytest

from limoncello.grid import GridPointStore
from limoncello.molecule import CollisionTable, MolecularSpecies

LAMDA_CO = """!MOLECULE
CO
!MOLECULAR WEIGHT
28.0
!NUMBER OF ENERGY LEVELS
3
!LEVEL + ENERGIES(cm^-1) + WEIGHT + J
    1     0.000000000  1.0     0
    2     3.845033413  3.0     1
    3    11.534919938  5.0     2
!NUMBER OF RADIATIVE TRANSITIONS
2
!TRANS + UP + LOW + EINSTEINA(s^-1) + FREQ(GHz) + E_u(K)
    1     2     1  7.203e-08          115.2712018     5.53
    2     3     2  6.910e-07          230.5380000    16.60
!NUMBER OF COLL PARTNERS
1
!COLLISIONS BETWEEN
2 CO-pH2 from Yang et al. (2010)
!NUMBER OF COLL TRANS
3
!NUMBER OF COLL TEMPS
2
!COLL TEMPS
   10.0   20.0
!TRANS + UP + LOW + COLLRATES(cm^3 s^-1)
    1     2     1  3.3e-11 3.4e-11
    2     3     1  3.4e-11 3.5e-11
    3     3     2  6.6e-11 6.7e-11
"""


def make_two_level(a_ul: float = 1e-4, k_ul: float = 1e-16) -> MolecularSpecies:
    return MolecularSpecies(
        name="CO",
        weight=28.0,
        energy=np.array([0.0, 3.845033413]),
        g=np.array([1.0, 3.0]),
        upper=np.array([1]),
        lower=np.array([0]),
        a_ul=np.array([a_ul]),
        freq=np.array([115.2712018e9]),
        collisions=[
            CollisionTable(
                partner_code=1,
                temperature=np.array([10.0, 100.0]),
                upper=np.array([1]),
                lower=np.array([0]),
                rates=np.array([[k_ul, k_ul]]),
            ),
        ],
    )


def make_three_level() -> MolecularSpecies:
    return MolecularSpecies(
        name="CO",
        weight=28.0,
        energy=np.array([0.0, 3.845033413, 11.534919938]),
        g=np.array([1.0, 3.0, 5.0]),
        upper=np.array([1, 2]),
        lower=np.array([0, 1]),
        a_ul=np.array([7.203e-08, 6.910e-07]),
        freq=np.array([115.2712018e9, 230.5380000e9]),
        collisions=[
            CollisionTable(
                partner_code=1,
                temperature=np.array([10.0, 20.0, 50.0]),
                upper=np.array([1, 2, 2]),
                lower=np.array([0, 0, 1]),
                rates=np.array([
                    [3.3e-17, 3.4e-17, 3.5e-17],
                    [3.4e-17, 3.5e-17, 3.6e-17],
                    [6.6e-17, 6.7e-17, 6.9e-17],
                ]),
            ),
        ],
    )


def make_pair_store(
        distance: float, density: float, abundance: float, temperature: float = 20.0
) -> GridPointStore:
    """A solved point at the origin next to a sink on the +x axis."""
    return GridPointStore(
        position=np.array([[0.0, 0.0, 0.0], [distance, 0.0, 0.0]]),
        neighbours=[[1], [0]],
        sink=np.array([False, True]),
        density=np.array([density, density]),
        temperature=np.array([temperature, temperature]),
        abundance=np.array([abundance, abundance]),
    )


def make_chain_store(
        n_inner: int, spacing: float, density: float, abundance: float, temperature: float = 20.0,
        n_species: int = 1,
) -> GridPointStore:
    """Points along the x axis with a sink at each end."""
    n_points = n_inner + 2
    position = np.zeros((n_points, 3))
    position[:, 0] = spacing * np.arange(n_points)
    neighbours = [[1]] + [[i - 1, i + 1] for i in range(1, n_points - 1)] + [[n_points - 2]]
    sink = np.zeros(n_points, dtype=bool)
    sink[[0, -1]] = True
    return GridPointStore(
        position=position,
        neighbours=neighbours,
        sink=sink,
        density=np.full(n_points, density),
        temperature=np.full(n_points, temperature),
        abundance=np.full((n_points, n_species), abundance),
        turbulence=np.full(n_points, 100.0),
    )


@pytest.fixture
def two_level():
    return make_two_level()


@pytest.fixture
def three_level():
    return make_three_level()


@pytest.fixture
def lamda_file(tmp_path):
    path = tmp_path / "co.dat"
    path.write_text(LAMDA_CO)
    return path
