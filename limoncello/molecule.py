import io
import pathlib
import typing as t
from dataclasses import dataclass, field

import numpy as np
import numpy.typing as npt
import pandas as pd
import polars as pl
from scipy.interpolate import interp1d

from .chemistry import PARTNER_NAMES, partner_code, species_mass
from .config import log
from .errors import FatalConfigError
from .nlte import NORM_TEMPERATURE, calc_einstein_b_lu, calc_einstein_b_ul, const_hc_on_kB_cm, planck

_CM3_TO_M3 = 1.0e-6
_GHZ_TO_HZ = 1.0e9


def _read_only(arr: npt.ArrayLike, dtype=np.float64) -> npt.NDArray:
    out = np.array(arr, dtype=dtype, copy=True)
    out.setflags(write=False)
    return out


@dataclass(eq=False)
class CollisionTable:
    """Downward collision rate coefficients of one partner, tabulated in kinetic temperature."""
    partner_code: int
    temperature: npt.NDArray[np.float64]
    upper: npt.NDArray[np.int64]
    lower: npt.NDArray[np.int64]
    rates: npt.NDArray[np.float64]
    partner_name: str = ""
    abundance: t.Optional[float] = None
    _interpolator: t.Optional[interp1d] = field(default=None, init=False, repr=False)

    def __post_init__(self):
        self.temperature = _read_only(self.temperature)
        self.upper = _read_only(self.upper, dtype=np.int64)
        self.lower = _read_only(self.lower, dtype=np.int64)
        self.rates = _read_only(np.atleast_2d(self.rates))
        if not self.partner_name:
            self.partner_name = PARTNER_NAMES.get(self.partner_code, str(self.partner_code))

    @property
    def ncoll(self) -> int:
        return self.upper.shape[0]

    def validate(self, nlev: int, species: str) -> None:
        tag = f"{species} collisions with {self.partner_name}"
        if self.partner_code not in PARTNER_NAMES:
            raise FatalConfigError(f"{tag}: unknown partner code {self.partner_code}.")
        if self.temperature.ndim != 1 or self.temperature.shape[0] < 1:
            raise FatalConfigError(f"{tag}: empty temperature grid.")
        if np.any(self.temperature <= 0) or np.any(np.diff(self.temperature) <= 0):
            raise FatalConfigError(f"{tag}: temperatures must be positive and strictly increasing.")
        if self.rates.shape != (self.ncoll, self.temperature.shape[0]) or self.lower.shape != self.upper.shape:
            raise FatalConfigError(
                f"{tag}: rate table shape {self.rates.shape} does not match "
                f"{self.ncoll} transitions x {self.temperature.shape[0]} temperatures."
            )
        if np.any((self.upper < 0) | (self.upper >= nlev) | (self.lower < 0) | (self.lower >= nlev)):
            raise FatalConfigError(f"{tag}: transition references a level outside 0..{nlev - 1}.")
        if np.any(self.upper == self.lower):
            raise FatalConfigError(f"{tag}: transition with identical upper and lower level.")
        if not np.all(np.isfinite(self.rates)) or np.any(self.rates < 0):
            raise FatalConfigError(f"{tag}: rate coefficients must be finite and non-negative.")

    def interpolate(self, temperature: npt.ArrayLike) -> npt.NDArray[np.float64]:
        """
        Rate coefficients at the given kinetic temperatures, linear in :math:`\\log T` and clamped to the tabulated
        range.

        :param temperature: Kinetic temperature(s) [K], shape ``(n,)``.
        :return: Downward rate coefficients [m^3/s], shape ``(n, ncoll)``.
        """
        temperature = np.atleast_1d(np.asarray(temperature, dtype=np.float64))
        if self.temperature.shape[0] == 1:
            return np.repeat(self.rates[:, 0][None, :], temperature.shape[0], axis=0)
        if self._interpolator is None:
            self._interpolator = interp1d(
                np.log(self.temperature),
                self.rates,
                axis=1,
                bounds_error=False,
                fill_value=(self.rates[:, 0], self.rates[:, -1]),
                assume_sorted=True,
            )
        return self._interpolator(np.log(temperature)).T


@dataclass(eq=False)
class MolecularSpecies:
    """
    Spectroscopic and collisional data of one species, read-only once constructed.

    Levels are ordered; transitions reference them with 0-based ``upper``/``lower`` indices.

    Attributes
    ----------
    name : str
        Species name as in the catalogue (e.g. ``"CO"``, ``"p-H2O"``).
    weight : float
        Molecular weight [amu].
    energy : np.ndarray
        Level energies [cm^-1].
    g : np.ndarray
        Statistical weights.
    upper, lower : np.ndarray
        Level indices of each radiative transition.
    a_ul : np.ndarray
        Einstein A coefficients [1/s].
    freq : np.ndarray
        Rest frequencies [Hz].
    collisions : List[CollisionTable]
        One rate table per collision partner.
    b_ul, b_lu : np.ndarray
        Einstein B coefficients per unit mean intensity.
    norm : float
        Planck intensity at 2.725 K of the middle line; intensities are carried in units of it along rays.
    """
    name: str
    weight: float
    energy: npt.NDArray[np.float64]
    g: npt.NDArray[np.float64]
    upper: npt.NDArray[np.int64]
    lower: npt.NDArray[np.int64]
    a_ul: npt.NDArray[np.float64]
    freq: npt.NDArray[np.float64]
    collisions: t.List[CollisionTable] = field(default_factory=list)
    b_ul: npt.NDArray[np.float64] = field(init=False)
    b_lu: npt.NDArray[np.float64] = field(init=False)
    norm: float = field(init=False)

    def __post_init__(self):
        self.energy = _read_only(self.energy)
        self.g = _read_only(self.g)
        self.upper = _read_only(self.upper, dtype=np.int64)
        self.lower = _read_only(self.lower, dtype=np.int64)
        self.a_ul = _read_only(self.a_ul)
        self.freq = _read_only(self.freq)
        self.collisions = list(self.collisions)
        self.validate()
        if self.weight is None or not self.weight > 0:
            self.weight = species_mass(self.name)
            log.warning(f"No molecular weight for {self.name}; using formula mass {self.weight:.4f} amu.")

        self.b_ul = _read_only(calc_einstein_b_ul(self.a_ul, self.freq))
        self.b_lu = _read_only(calc_einstein_b_lu(self.b_ul, self.g[self.upper], self.g[self.lower]))
        if self.nline > 0:
            self.norm = planck(self.freq[self.nline // 2], NORM_TEMPERATURE)
        else:
            self.norm = 1.0

    @property
    def nlev(self) -> int:
        return self.energy.shape[0]

    @property
    def nline(self) -> int:
        return self.upper.shape[0]

    @property
    def npart(self) -> int:
        return len(self.collisions)

    @property
    def partner_codes(self) -> t.List[int]:
        return [table.partner_code for table in self.collisions]

    def validate(self) -> None:
        nlev = self.energy.shape[0]
        if nlev < 1:
            raise FatalConfigError(f"{self.name}: no energy levels.")
        if self.g.shape != (nlev,) or np.any(self.g <= 0) or not np.all(np.isfinite(self.energy)):
            raise FatalConfigError(f"{self.name}: level energies and positive statistical weights required.")
        n_line = self.upper.shape[0]
        if any(arr.shape != (n_line,) for arr in (self.lower, self.a_ul, self.freq)):
            raise FatalConfigError(f"{self.name}: inconsistent transition array lengths.")
        if np.any((self.upper < 0) | (self.upper >= nlev) | (self.lower < 0) | (self.lower >= nlev)):
            raise FatalConfigError(f"{self.name}: radiative transition references a level outside 0..{nlev - 1}.")
        if np.any(self.upper == self.lower):
            raise FatalConfigError(f"{self.name}: radiative transition with identical upper and lower level.")
        if not np.all(np.isfinite(self.a_ul)) or np.any(self.a_ul < 0):
            raise FatalConfigError(f"{self.name}: Einstein A coefficients must be finite and non-negative.")
        if not np.all(np.isfinite(self.freq)) or np.any(self.freq <= 0):
            raise FatalConfigError(f"{self.name}: line frequencies must be positive.")
        for table in self.collisions:
            table.validate(nlev, self.name)

    def collision_rates(
            self, temperature: npt.ArrayLike
    ) -> t.List[t.Tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]]:
        """
        Downward and upward rate coefficients per partner at the given kinetic temperatures.

        Upward coefficients follow from detailed balance,
        :math:`K_{lu} = K_{ul} \\frac{g_u}{g_l} e^{-h c (E_u - E_l) / k T}`.

        :param temperature: Kinetic temperatures [K], shape ``(n,)``.
        :return: ``[(down, up), ...]`` per partner, each of shape ``(n, ncoll)`` [m^3/s].
        """
        temperature = np.atleast_1d(np.asarray(temperature, dtype=np.float64))
        safe_t = np.where(temperature > 0, temperature, np.inf)
        rates = []
        for table in self.collisions:
            down = table.interpolate(np.where(temperature > 0, temperature, table.temperature[0]))
            # Rows are stored upper -> lower, but some catalogues list them the other way round.
            hi = np.maximum(table.upper, table.lower)
            lo = np.minimum(table.upper, table.lower)
            d_energy = self.energy[hi] - self.energy[lo]
            up = down * (self.g[hi] / self.g[lo])[None, :] * np.exp(
                -const_hc_on_kB_cm * d_energy[None, :] / safe_t[:, None]
            )
            rates.append((down, up))
        return rates

    def transitions_frame(self) -> pl.DataFrame:
        return pl.DataFrame({
            "line": np.arange(self.nline),
            "upper": self.upper,
            "lower": self.lower,
            "A": self.a_ul,
            "freq": self.freq,
            "B_ul": self.b_ul,
            "B_lu": self.b_lu,
            "E_upper": self.energy[self.upper],
        })


def _data_lines(filename: pathlib.Path) -> t.Iterator[str]:
    with open(filename, "r") as f:
        for line in f:
            stripped = line.strip()
            if stripped and not stripped.startswith("!"):
                yield stripped


def _read_block(lines: t.Iterator[str], n_rows: int, what: str, filename: pathlib.Path) -> pd.DataFrame:
    block = []
    for _ in range(n_rows):
        try:
            block.append(next(lines))
        except StopIteration:
            raise FatalConfigError(f"{filename}: unexpected end of file while reading {what}.") from None
    try:
        return pd.read_csv(io.StringIO("\n".join(block)), sep=r"\s+", header=None, comment="!")
    except (ValueError, pd.errors.ParserError) as e:
        raise FatalConfigError(f"{filename}: malformed {what} block: {e}") from e


def _next_fields(lines: t.Iterator[str], what: str, filename: pathlib.Path) -> t.List[str]:
    try:
        return next(lines).split()
    except StopIteration:
        raise FatalConfigError(f"{filename}: unexpected end of file, expected {what}.") from None


def read_lamda(filename: t.Union[str, pathlib.Path]) -> MolecularSpecies:
    """
    Reads a LAMDA format molecular data file.

    Rate coefficients are converted from cm^3/s to m^3/s, frequencies from GHz to Hz and level indices to 0-based.
    An optional abundance of the collision partner may follow the number of temperatures.

    :param filename: Path to the data file.
    :return: The parsed species.
    """
    if type(filename) is str:
        filename = pathlib.Path(filename)
    if not filename.exists():
        raise FatalConfigError(f"Molecular data file not found ({filename}).")
    lines = _data_lines(filename)

    try:
        name = _next_fields(lines, "molecule name", filename)[0].replace(",", "")
        weight = float(_next_fields(lines, "molecular weight", filename)[0])
        n_levels = int(_next_fields(lines, "number of levels", filename)[0])
        levels = _read_block(lines, n_levels, "energy levels", filename)
        n_lines = int(_next_fields(lines, "number of transitions", filename)[0])
        trans = _read_block(lines, n_lines, "radiative transitions", filename) if n_lines > 0 else None
        n_partners = int(_next_fields(lines, "number of collision partners", filename)[0])

        collisions = []
        for _ in range(n_partners):
            header = _next_fields(lines, "collision partner", filename)
            code = int(header[0]) if header[0].isdigit() else partner_code(header[0])
            n_coll = int(_next_fields(lines, "number of collisional transitions", filename)[0])
            temp_fields = _next_fields(lines, "number of collision temperatures", filename)
            n_temp = int(temp_fields[0])
            abundance = float(temp_fields[1]) if len(temp_fields) > 1 else None
            temps = _read_block(lines, 1, "collision temperatures", filename).to_numpy(dtype=np.float64).ravel()
            if temps.shape[0] != n_temp:
                raise FatalConfigError(f"{filename}: expected {n_temp} collision temperatures, got {temps.shape[0]}.")
            rates = _read_block(lines, n_coll, "collision rates", filename).to_numpy(dtype=np.float64)
            collisions.append(CollisionTable(
                partner_code=code,
                partner_name=PARTNER_NAMES.get(code, header[0]),
                temperature=temps,
                upper=rates[:, 1].astype(np.int64) - 1,
                lower=rates[:, 2].astype(np.int64) - 1,
                rates=rates[:, 3:3 + n_temp] * _CM3_TO_M3,
                abundance=abundance,
            ))
    except (ValueError, IndexError) as e:
        raise FatalConfigError(f"{filename}: malformed molecular data file: {e}") from e

    if trans is None:
        upper = lower = np.zeros(0, dtype=np.int64)
        a_ul = freq = np.zeros(0)
    else:
        upper = trans[1].to_numpy(dtype=np.int64) - 1
        lower = trans[2].to_numpy(dtype=np.int64) - 1
        a_ul = trans[3].to_numpy(dtype=np.float64)
        freq = trans[4].to_numpy(dtype=np.float64) * _GHZ_TO_HZ

    species = MolecularSpecies(
        name=name,
        weight=weight,
        energy=levels[1].to_numpy(dtype=np.float64),
        g=levels[2].to_numpy(dtype=np.float64),
        upper=upper,
        lower=lower,
        a_ul=a_ul,
        freq=freq,
        collisions=collisions,
    )
    log.info(
        f"Read {species.name}: {species.nlev} levels, {species.nline} lines, "
        f"partners {[table.partner_name for table in collisions]}."
    )
    return species
