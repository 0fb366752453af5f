import sys

import astropy.units as u
import numpy as np
from scipy.spatial import Delaunay

from limoncello.config import SolverConfig, log, output_dir
from limoncello.driver import run_populations
from limoncello.grid import GridPointStore, PhysicsModel
from limoncello.molecule import CollisionTable, MolecularSpecies, read_lamda

cloud_radius = (0.05 << u.pc).to(u.m).value
n_internal = 400
n_sink = 120


class InfallingCore(PhysicsModel):
    """Isothermal core with a power-law H2 density and free-fall-like infall."""

    def __init__(self, radius: float, central_density: float = 1.5e12, temperature: float = 20.0):
        self.radius = radius
        self.central_density = central_density
        self.t_kin = temperature

    def density(self, position):
        r = max(np.linalg.norm(position), 0.01 * self.radius)
        return [self.central_density * (0.01 * self.radius / r) ** 1.5]

    def temperature(self, position):
        return self.t_kin, self.t_kin

    def abundance(self, position):
        return [1e-4]

    def velocity(self, position):
        r = np.linalg.norm(position)
        if r == 0:
            return np.zeros(3)
        return -150.0 * np.sqrt(0.01 * self.radius / max(r, 0.01 * self.radius)) * position / r

    def doppler(self, position):
        return 200.0


def toy_co() -> MolecularSpecies:
    # Lowest three rotational levels of CO with rates of order those for p-H2 at 10-100 K.
    return MolecularSpecies(
        name="CO",
        weight=28.0,
        energy=np.array([0.0, 3.845033, 11.534919]),
        g=np.array([1.0, 3.0, 5.0]),
        upper=np.array([1, 2]),
        lower=np.array([0, 1]),
        a_ul=np.array([7.203e-08, 6.910e-07]),
        freq=np.array([115.2712018e9, 230.5380000e9]),
        collisions=[
            CollisionTable(
                partner_code=1,
                temperature=np.array([10.0, 20.0, 50.0, 100.0]),
                upper=np.array([1, 2, 2]),
                lower=np.array([0, 0, 1]),
                rates=np.array([
                    [3.3e-11, 3.3e-11, 3.4e-11, 3.5e-11],
                    [3.4e-11, 3.4e-11, 3.5e-11, 3.6e-11],
                    [6.6e-11, 6.7e-11, 6.9e-11, 7.1e-11],
                ]) * 1e-6,
            ),
        ],
    )


rng = np.random.default_rng(42)
r = cloud_radius * rng.random(n_internal) ** (1 / 3)
cos_theta = rng.uniform(-1, 1, n_internal)
phi = rng.uniform(0, 2 * np.pi, n_internal)
internal = np.column_stack([
    r * np.sqrt(1 - cos_theta ** 2) * np.cos(phi),
    r * np.sqrt(1 - cos_theta ** 2) * np.sin(phi),
    r * cos_theta,
])
# Sinks on a Fibonacci sphere just outside the cloud.
k = np.arange(n_sink) + 0.5
sink_z = 1 - 2 * k / n_sink
sink_phi = np.pi * (1 + 5 ** 0.5) * k
surface = 1.05 * cloud_radius * np.column_stack([
    np.sqrt(1 - sink_z ** 2) * np.cos(sink_phi),
    np.sqrt(1 - sink_z ** 2) * np.sin(sink_phi),
    sink_z,
])
positions = np.vstack([internal, surface])
sink = np.concatenate([np.zeros(n_internal, dtype=bool), np.ones(n_sink, dtype=bool)])

indptr, indices = Delaunay(positions).vertex_neighbor_vertices
neighbours = [indices[indptr[i]:indptr[i + 1]] for i in range(positions.shape[0])]

store = GridPointStore.from_model(positions, neighbours, sink, InfallingCore(cloud_radius))
species = [read_lamda(sys.argv[1])] if len(sys.argv) > 1 else [toy_co()]

config = SolverConfig(
    ininphot=50,
    max_phot=800,
    tol=0.05,
    goal=3,
    max_iter=15,
    n_threads=4,
    init_lte=True,
    checkpoint=output_dir / "example_checkpoint.pickle",
)
report = run_populations(store, species, config)

log.info(report.summary())
report.to_frame().write_csv(output_dir / "example_report.csv")
for species_idx, sp in enumerate(store.species):
    store.populations_frame(species_idx).write_csv(output_dir / f"example_{sp.name}_pops.csv")
print(report.summary())
