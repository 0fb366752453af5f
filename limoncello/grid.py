import abc
import typing as t
from dataclasses import dataclass

import numpy as np
import numpy.typing as npt
import polars as pl

from .chemistry import build_partner_weights
from .config import SolverConfig, log
from .dust import DustOpacity, continuum_caches
from .errors import FatalConfigError, PointStatus
from .molecule import MolecularSpecies
from .nlte import boltzmann_population, const_hc_on_4_pi_sqrt_pi, doppler_binv

_DEFAULT_GAS_TO_DUST = 100.0


class PhysicsModel(abc.ABC):
    """
    Physical fields of the modelled source, evaluated at a position [m].

    Density columns are per collision partner (the first column is the reference density that abundances are
    relative to, normally H2); temperatures are ``(kinetic, dust)``.
    """

    @abc.abstractmethod
    def density(self, position: npt.NDArray[np.float64]) -> npt.ArrayLike:
        pass

    @abc.abstractmethod
    def temperature(self, position: npt.NDArray[np.float64]) -> t.Tuple[float, float]:
        pass

    @abc.abstractmethod
    def abundance(self, position: npt.NDArray[np.float64]) -> npt.ArrayLike:
        pass

    @abc.abstractmethod
    def velocity(self, position: npt.NDArray[np.float64]) -> npt.ArrayLike:
        pass

    @abc.abstractmethod
    def doppler(self, position: npt.NDArray[np.float64]) -> float:
        pass

    def gas_to_dust(self, position: npt.NDArray[np.float64]) -> float:
        return _DEFAULT_GAS_TO_DUST

    def magfield(self, position: npt.NDArray[np.float64]) -> npt.ArrayLike:
        return np.zeros(3)


@dataclass
class PopulationState:
    """Views onto the population data of one point and species. Writing through them updates the store."""
    pops: npt.NDArray[np.float64]
    knu: npt.NDArray[np.float64]
    dust: npt.NDArray[np.float64]
    line_j: npt.NDArray[np.float64]
    line_a: npt.NDArray[np.float64]
    binv: float
    nmol: float
    partner: t.List[t.Tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]]


@dataclass
class GridPoint:
    id: int
    position: npt.NDArray[np.float64]
    velocity: npt.NDArray[np.float64]
    density: npt.NDArray[np.float64]
    temperature: npt.NDArray[np.float64]
    abundance: npt.NDArray[np.float64]
    turbulence: float
    neighbours: npt.NDArray[np.int64]
    ds: npt.NDArray[np.float64]
    direction: npt.NDArray[np.float64]
    weight: npt.NDArray[np.float64]
    sink: bool
    status: PointStatus
    mol: t.List[PopulationState]


def line_emissivity_opacity(
        species: MolecularSpecies,
        pops: npt.NDArray[np.float64],
        nmol: t.Union[float, npt.NDArray[np.float64]],
        binv: t.Union[float, npt.NDArray[np.float64]],
) -> t.Tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    """
    Line-centre emissivity and opacity of every transition for the given populations.

    .. math::
        j = \\frac{h c}{4 \\pi \\sqrt{\\pi} b} n_{\\text{mol}} n_u A_{ul}, \\qquad
        \\alpha = \\frac{h c}{4 \\pi \\sqrt{\\pi} b} n_{\\text{mol}} (n_l B_{lu} - n_u B_{ul})

    The Gaussian profile factor :math:`e^{-(v/b)^2}` is applied along the ray.

    :param species: The species.
    :param pops: Populations, shape ``(nlev,)`` or ``(n, nlev)``.
    :param nmol: Molecular number density [m^-3], scalar or ``(n,)``.
    :param binv: Inverse Doppler width [s/m], scalar or ``(n,)``.
    :return: ``(j, alpha)`` with the leading shape of ``pops`` and ``nline`` columns.
    """
    factor = const_hc_on_4_pi_sqrt_pi * np.asarray(binv) * np.asarray(nmol)
    if pops.ndim == 2:
        factor = np.broadcast_to(factor, (pops.shape[0],))[:, None]
    n_u = pops[..., species.upper]
    n_l = pops[..., species.lower]
    line_j = factor * n_u * species.a_ul
    line_a = factor * (n_l * species.b_lu - n_u * species.b_ul)
    return line_j, line_a


class GridPointStore:
    """
    The spatial sample: per-point physical state, neighbour graph and per-species populations.

    All per-point data lives in contiguous arrays indexed by point id; neighbour links are stored in compressed
    sparse row form (``neigh_ptr``/``neigh_idx``) together with the unit direction and length of every link.
    """

    def __init__(
            self,
            position: npt.ArrayLike,
            neighbours: t.Sequence[t.Sequence[int]],
            sink: npt.ArrayLike,
            density: npt.ArrayLike,
            temperature: npt.ArrayLike,
            abundance: npt.ArrayLike,
            velocity: t.Optional[npt.ArrayLike] = None,
            turbulence: t.Optional[npt.ArrayLike] = None,
            gas_to_dust: t.Optional[npt.ArrayLike] = None,
            magfield: t.Optional[npt.ArrayLike] = None,
    ):
        self.position = np.ascontiguousarray(position, dtype=np.float64)
        if self.position.ndim != 2 or self.position.shape[1] != 3 or self.position.shape[0] == 0:
            raise FatalConfigError(f"Grid positions must have shape (n > 0, 3), got {self.position.shape}.")
        n_points = self.position.shape[0]

        self.sink = np.ascontiguousarray(sink, dtype=np.bool_)
        self.density = np.ascontiguousarray(np.atleast_1d(density), dtype=np.float64)
        if self.density.ndim == 1:
            self.density = np.ascontiguousarray(self.density[:, None])
        self.temperature = np.ascontiguousarray(temperature, dtype=np.float64)
        if self.temperature.ndim == 1:
            self.temperature = np.ascontiguousarray(np.column_stack([self.temperature, self.temperature]))
        self.abundance = np.ascontiguousarray(abundance, dtype=np.float64)
        if self.abundance.ndim == 1:
            self.abundance = np.ascontiguousarray(self.abundance[:, None])
        self.velocity = (
            np.zeros((n_points, 3)) if velocity is None else np.ascontiguousarray(velocity, dtype=np.float64)
        )
        self.turbulence = (
            np.zeros(n_points) if turbulence is None else np.ascontiguousarray(turbulence, dtype=np.float64)
        )
        self.gas_to_dust = (
            np.full(n_points, _DEFAULT_GAS_TO_DUST) if gas_to_dust is None
            else np.ascontiguousarray(gas_to_dust, dtype=np.float64)
        )
        self.magfield = np.zeros((n_points, 3)) if magfield is None else np.asarray(magfield, dtype=np.float64)

        expected = {
            "sink": (self.sink, (n_points,)),
            "temperature": (self.temperature, (n_points, 2)),
            "velocity": (self.velocity, (n_points, 3)),
            "turbulence": (self.turbulence, (n_points,)),
            "gas_to_dust": (self.gas_to_dust, (n_points,)),
            "magfield": (self.magfield, (n_points, 3)),
        }
        for name, (arr, shape) in expected.items():
            if arr.shape != shape:
                raise FatalConfigError(f"Grid {name} has shape {arr.shape}, expected {shape}.")
        if self.density.shape[0] != n_points or self.abundance.shape[0] != n_points:
            raise FatalConfigError("Grid density and abundance need one row per point.")
        if len(neighbours) != n_points:
            raise FatalConfigError(f"Neighbour lists given for {len(neighbours)} of {n_points} points.")

        self._build_links(neighbours)

        self.status = np.where(self.sink, PointStatus.SINK, PointStatus.UNCONVERGED).astype(np.int8)
        self.species: t.List[MolecularSpecies] = []
        self.nmol: t.List[npt.NDArray[np.float64]] = []
        self.binv: npt.NDArray[np.float64] = np.zeros((n_points, 0))
        self.pops: t.List[npt.NDArray[np.float64]] = []
        self.partner_density: t.List[npt.NDArray[np.float64]] = []
        self.partner_rates: t.List[t.List[t.Tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]]] = []
        self.line_offsets = np.zeros(1, dtype=np.int64)

    @classmethod
    def from_model(
            cls,
            position: npt.ArrayLike,
            neighbours: t.Sequence[t.Sequence[int]],
            sink: npt.ArrayLike,
            model: PhysicsModel,
    ) -> "GridPointStore":
        """Evaluates the physics model at every point and builds the store."""
        position = np.asarray(position, dtype=np.float64)
        fields = {
            "density": [], "temperature": [], "abundance": [], "velocity": [],
            "turbulence": [], "gas_to_dust": [], "magfield": [],
        }
        for x in position:
            fields["density"].append(np.atleast_1d(model.density(x)))
            fields["temperature"].append(np.atleast_1d(model.temperature(x)))
            fields["abundance"].append(np.atleast_1d(model.abundance(x)))
            fields["velocity"].append(np.asarray(model.velocity(x), dtype=np.float64))
            fields["turbulence"].append(model.doppler(x))
            fields["gas_to_dust"].append(model.gas_to_dust(x))
            fields["magfield"].append(np.asarray(model.magfield(x), dtype=np.float64))
        return cls(
            position=position,
            neighbours=neighbours,
            sink=sink,
            **{name: np.array(values, dtype=np.float64) for name, values in fields.items()},
        )

    def _build_links(self, neighbours: t.Sequence[t.Sequence[int]]) -> None:
        n_points = self.n_points
        counts = np.array([len(nb) for nb in neighbours], dtype=np.int64)
        self.neigh_ptr = np.zeros(n_points + 1, dtype=np.int64)
        np.cumsum(counts, out=self.neigh_ptr[1:])
        self.neigh_idx = np.ascontiguousarray(
            np.concatenate([np.asarray(nb, dtype=np.int64) for nb in neighbours]) if counts.sum() > 0
            else np.zeros(0, dtype=np.int64)
        )
        if np.any((self.neigh_idx < 0) | (self.neigh_idx >= n_points)):
            raise FatalConfigError("Neighbour list references a point outside the grid.")
        owner = np.repeat(np.arange(n_points), counts)
        if np.any(self.neigh_idx == owner):
            raise FatalConfigError("A point lists itself as a neighbour.")

        vec = self.position[self.neigh_idx] - self.position[owner]
        self.neigh_ds = np.ascontiguousarray(np.linalg.norm(vec, axis=1))
        if np.any(self.neigh_ds <= 0):
            raise FatalConfigError("Neighbouring points share a position.")
        self.neigh_dir = np.ascontiguousarray(vec / self.neigh_ds[:, None])
        # Inverse-square share of each neighbour in its point's surroundings; sums to one per point.
        inv_sq = 1.0 / self.neigh_ds ** 2
        total = np.zeros(n_points)
        np.add.at(total, owner, inv_sq)
        self.neigh_w = np.ascontiguousarray(inv_sq / total[owner]) if owner.size > 0 else np.zeros(0)

        lonely = np.nonzero((counts == 0) & ~self.sink)[0]
        if lonely.size > 0:
            log.warning(f"{lonely.size} non-sink points have no neighbours; their rays all leave the grid.")

    @property
    def n_points(self) -> int:
        return self.position.shape[0]

    @property
    def n_species(self) -> int:
        return len(self.species)

    @property
    def nline_total(self) -> int:
        return int(self.line_offsets[-1])

    @property
    def reference_density(self) -> npt.NDArray[np.float64]:
        return self.density[:, 0]

    def line_slice(self, species_idx: int) -> slice:
        return slice(int(self.line_offsets[species_idx]), int(self.line_offsets[species_idx + 1]))

    def attach_species(
            self,
            species: t.Sequence[MolecularSpecies],
            config: SolverConfig,
            dust_opacity: t.Optional[DustOpacity] = None,
    ) -> None:
        """
        Allocates populations and per-point caches for the tracked species: Doppler widths, partner densities,
        collisional rate sub-blocks at the local kinetic temperature, dust continuum and the line opacity cache.
        """
        if len(species) == 0:
            raise FatalConfigError("No species to solve for.")
        if self.abundance.shape[1] < len(species):
            raise FatalConfigError(
                f"Grid holds abundances for {self.abundance.shape[1]} species, {len(species)} requested."
            )
        self.species = list(species)
        n_points = self.n_points
        self.line_offsets = np.zeros(len(species) + 1, dtype=np.int64)
        np.cumsum([sp.nline for sp in species], out=self.line_offsets[1:])
        n_lines = self.nline_total

        t_kin = self.temperature[:, 0]
        self.binv = np.ascontiguousarray(
            np.column_stack([doppler_binv(t_kin, self.turbulence, sp.weight) for sp in species])
        )
        self.nmol = [self.abundance[:, s] * self.reference_density for s in range(len(species))]
        self.pops = [np.zeros((n_points, sp.nlev)) for sp in species]

        self.partner_density = []
        self.partner_rates = []
        for sp in species:
            weights = build_partner_weights(
                sp.partner_codes, self.density.shape[1], config.collision_partners, config.ortho_para_ratio
            )
            missing = [sp.collisions[p].partner_name for p in range(sp.npart) if not weights[p].any()]
            if missing:
                log.warning(f"{sp.name}: no density available for collision partners {missing}.")
            self.partner_density.append(self.density @ weights.T)
            self.partner_rates.append(sp.collision_rates(t_kin))

        self.freq_all = np.concatenate([sp.freq for sp in species]) if n_lines > 0 else np.zeros(0)
        self.norm_all = np.concatenate([np.full(sp.nline, sp.norm) for sp in species]) if n_lines > 0 else np.zeros(0)
        self.line_species = np.concatenate(
            [np.full(sp.nline, s, dtype=np.int64) for s, sp in enumerate(species)]
        ) if n_lines > 0 else np.zeros(0, dtype=np.int64)

        knu, dust = continuum_caches(
            self.freq_all, self.reference_density, self.temperature[:, 1], self.gas_to_dust, dust_opacity
        )
        self.knu = np.ascontiguousarray(knu)
        self.dust = np.ascontiguousarray(dust)
        self.line_j = np.zeros((n_points, n_lines))
        self.line_a = np.zeros((n_points, n_lines))
        log.info(
            f"Attached {len(species)} species ({n_lines} lines) to {n_points} points "
            f"({int(self.sink.sum())} sinks)."
        )

    def set_lte(self, points: t.Optional[npt.NDArray[np.int64]] = None) -> None:
        """Boltzmann populations at the local kinetic temperature."""
        if points is None:
            points = np.arange(self.n_points)
        for s, sp in enumerate(self.species):
            self.pops[s][points] = boltzmann_population(sp.energy, sp.g, self.temperature[points, 0])

    def set_boltzmann(self, temperature: float, points: t.Optional[npt.NDArray[np.int64]] = None) -> None:
        """Boltzmann populations at one temperature for all given points."""
        if points is None:
            points = np.arange(self.n_points)
        for s, sp in enumerate(self.species):
            self.pops[s][points] = boltzmann_population(sp.energy, sp.g, temperature)[None, :]

    def refresh_line_caches(self) -> None:
        """Recomputes the line emissivity/opacity cache of every point from the current populations."""
        for s, sp in enumerate(self.species):
            if sp.nline == 0:
                continue
            line_j, line_a = line_emissivity_opacity(sp, self.pops[s], self.nmol[s], self.binv[:, s])
            self.line_j[:, self.line_slice(s)] = line_j
            self.line_a[:, self.line_slice(s)] = line_a

    def population_state(self, point: int, species_idx: int) -> PopulationState:
        lines = self.line_slice(species_idx)
        return PopulationState(
            pops=self.pops[species_idx][point],
            knu=self.knu[point, lines],
            dust=self.dust[point, lines],
            line_j=self.line_j[point, lines],
            line_a=self.line_a[point, lines],
            binv=float(self.binv[point, species_idx]),
            nmol=float(self.nmol[species_idx][point]),
            partner=[(down[point], up[point]) for down, up in self.partner_rates[species_idx]],
        )

    def __len__(self) -> int:
        return self.n_points

    def __getitem__(self, point: int) -> GridPoint:
        links = slice(int(self.neigh_ptr[point]), int(self.neigh_ptr[point + 1]))
        return GridPoint(
            id=point,
            position=self.position[point],
            velocity=self.velocity[point],
            density=self.density[point],
            temperature=self.temperature[point],
            abundance=self.abundance[point],
            turbulence=float(self.turbulence[point]),
            neighbours=self.neigh_idx[links],
            ds=self.neigh_ds[links],
            direction=self.neigh_dir[links],
            weight=self.neigh_w[links],
            sink=bool(self.sink[point]),
            status=PointStatus(int(self.status[point])),
            mol=[self.population_state(point, s) for s in range(self.n_species)],
        )

    def active_points(self) -> npt.NDArray[np.int64]:
        """Non-sink points still to be iterated."""
        return np.nonzero(self.status == PointStatus.UNCONVERGED)[0]

    def populations_frame(self, species_idx: int) -> pl.DataFrame:
        """Populations of one species at every point, with position and status, for downstream ray tracing."""
        sp = self.species[species_idx]
        data = {
            "id": np.arange(self.n_points),
            "x": self.position[:, 0],
            "y": self.position[:, 1],
            "z": self.position[:, 2],
            "t_kin": self.temperature[:, 0],
            "status": [PointStatus(int(s)).name for s in self.status],
        }
        for lev in range(sp.nlev):
            data[f"n{lev}"] = self.pops[species_idx][:, lev]
        return pl.DataFrame(data)
