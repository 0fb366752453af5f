import pathlib
import typing as t

import numpy as np
import numpy.typing as npt
from scipy.interpolate import interp1d

from .config import log
from .errors import FatalConfigError
from .nlte import const_c, const_gas_mass_per_h2, planck_array

_CM2_PER_G_TO_M2_PER_KG = 0.1
_MICRON_TO_M = 1.0e-6


class DustOpacity:
    """
    Dust mass absorption coefficient tabulated in wavelength, interpolated linearly in log-log space.

    The table has two columns: wavelength [micron] and :math:`\\kappa` [cm^2/g of dust].
    """

    def __init__(self, wavelength: npt.ArrayLike, kappa: npt.ArrayLike):
        wavelength = np.asarray(wavelength, dtype=np.float64)
        kappa = np.asarray(kappa, dtype=np.float64)
        if wavelength.ndim != 1 or wavelength.shape != kappa.shape or wavelength.shape[0] < 2:
            raise FatalConfigError("Dust opacity table needs at least two (wavelength, kappa) rows.")
        if np.any(wavelength <= 0) or np.any(kappa <= 0):
            raise FatalConfigError("Dust opacity table must hold positive wavelengths and opacities.")
        order = np.argsort(wavelength)
        self.wavelength = wavelength[order]
        self.kappa = kappa[order]
        self._interpolator = interp1d(
            np.log(self.wavelength), np.log(self.kappa), kind="linear", fill_value="extrapolate"
        )

    @classmethod
    def from_file(cls, filename: t.Union[str, pathlib.Path]) -> "DustOpacity":
        if type(filename) is str:
            filename = pathlib.Path(filename)
        try:
            table = np.loadtxt(filename, comments=("#", "!"), usecols=(0, 1), ndmin=2)
        except (OSError, ValueError) as e:
            raise FatalConfigError(f"Cannot read dust opacity table {filename}: {e}") from e
        log.info(f"Read dust opacities from {filename} ({table.shape[0]} rows).")
        return cls(table[:, 0], table[:, 1])

    def kappa_at(self, freq: npt.ArrayLike) -> npt.NDArray[np.float64]:
        """Mass absorption coefficient [m^2/kg] at the given frequencies [Hz]."""
        wavelength_um = const_c / np.asarray(freq, dtype=np.float64) / _MICRON_TO_M
        return np.exp(self._interpolator(np.log(wavelength_um))) * _CM2_PER_G_TO_M2_PER_KG


def continuum_caches(
        freq: npt.NDArray[np.float64],
        h2_density: npt.NDArray[np.float64],
        dust_temperature: npt.NDArray[np.float64],
        gas_to_dust: npt.NDArray[np.float64],
        opacity: t.Optional[DustOpacity],
) -> t.Tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    """
    Dust continuum opacity ``knu`` [1/m] and emissivity source ``dust`` (the Planck function at the dust
    temperature) at each point and line frequency.

    :param freq: Line frequencies [Hz], shape ``(nline,)``.
    :param h2_density: H2 number density [m^-3], shape ``(n,)``.
    :param dust_temperature: Dust temperature [K], shape ``(n,)``.
    :param gas_to_dust: Gas-to-dust mass ratio, shape ``(n,)``.
    :param opacity: Dust opacity table, or ``None`` for no continuum.
    :return: ``(knu, dust)``, each of shape ``(n, nline)``.
    """
    n_points = h2_density.shape[0]
    if opacity is None or freq.shape[0] == 0:
        return np.zeros((n_points, freq.shape[0])), np.zeros((n_points, freq.shape[0]))
    kappa = opacity.kappa_at(freq)
    with np.errstate(divide="ignore", invalid="ignore"):
        dust_mass_density = np.where(gas_to_dust > 0, const_gas_mass_per_h2 * h2_density / gas_to_dust, 0.0)
    knu = dust_mass_density[:, None] * kappa[None, :]
    dust = planck_array(freq, dust_temperature)
    return knu, dust
