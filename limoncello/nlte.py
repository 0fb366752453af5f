import math
import typing as t

import numba
import numpy as np
import numpy.typing as npt
from astropy import constants as ac
from astropy import units as u

from .config import _FAST_EXP_MAX_TAYLOR, _FAST_EXP_NUM_BITS, _TAU_MAX

# Constants with units:
ac_hc_on_kB = (ac.h * ac.c / ac.k_B).to(u.cm * u.K)
ac_2_h_on_c_sq = 2 * ac.h / ac.c ** 2
ac_hc_on_4_pi_sqrt_pi = ac.h * ac.c / (4 * np.pi * np.sqrt(np.pi))

# Dimensionless (SI) version for numba
const_c = ac.c.si.value
const_h = ac.h.si.value
const_k_B = ac.k_B.si.value
const_amu = ac.u.si.value
const_h_on_kB = (ac.h / ac.k_B).si.value
const_hc_on_kB_cm = ac_hc_on_kB.value
const_2_h_on_c_sq = ac_2_h_on_c_sq.si.value
const_hc_on_4_pi_sqrt_pi = ac_hc_on_4_pi_sqrt_pi.si.value

# Gas mass per H2 molecule (2.4 amu) for converting a dust mass opacity into an opacity per unit length.
const_gas_mass_per_h2 = 2.4 * const_amu

# Photon frequencies are sampled uniformly within this many Doppler widths of the line centre.
LINE_HALF_WIDTH = 4.3

# Reference temperature for intensity normalisation.
NORM_TEMPERATURE = 2.725


@numba.njit(cache=True, nogil=True)
def planck(freq: float, temperature: float) -> float:
    """
    Planck function :math:`B_{\\nu}(T)` in :math:`\\text{W m}^{-2}\\,\\text{Hz}^{-1}\\,\\text{sr}^{-1}`.

    .. math::
        B_{\\nu}(T) = \\frac{2 h \\nu^{3}}{c^{2}} \\frac{1}{e^{h \\nu / k T} - 1}

    Zero at (or numerically close to) zero temperature.
    """
    if temperature < 1e-30:
        return 0.0
    x = const_h_on_kB * freq / temperature
    if x > 700.0:
        return 0.0
    return const_2_h_on_c_sq * freq ** 3 / math.expm1(x)


def planck_array(freq: npt.NDArray[np.float64], temperature: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
    """Vectorised :func:`planck` for temperatures ``(n,)`` against frequencies ``(m,)``; returns ``(n, m)``."""
    freq = np.atleast_1d(np.asarray(freq, dtype=np.float64))
    temperature = np.atleast_1d(np.asarray(temperature, dtype=np.float64))
    out = np.zeros((temperature.shape[0], freq.shape[0]))
    for i, temp in enumerate(temperature):
        for j, nu in enumerate(freq):
            out[i, j] = planck(nu, temp)
    return out


def calc_einstein_b_ul(a_ul: npt.NDArray[np.float64], freq: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
    """
    Stimulated emission coefficient per unit mean intensity, in :math:`\\text{m}^{2}\\,\\text{J}^{-1}\\,\\text{s}^{-1}`.

    .. math::
        B_{ul}=\\frac{A_{ul} c^{2}}{2 h \\nu^{3}}

    :param a_ul: Einstein A coefficients [1/s].
    :param freq: Line frequencies [Hz].
    :return:
    """
    return a_ul / (const_2_h_on_c_sq * freq ** 3)


def calc_einstein_b_lu(
        b_ul: npt.NDArray[np.float64],
        g_u: npt.NDArray[np.float64],
        g_l: npt.NDArray[np.float64],
) -> npt.NDArray[np.float64]:
    return b_ul * g_u / g_l


def boltzmann_population(
        energy: npt.NDArray[np.float64],
        g: npt.NDArray[np.float64],
        temperature: t.Union[float, npt.NDArray[np.float64]],
) -> npt.NDArray[np.float64]:
    """
    LTE level populations :math:`n_i \\propto g_i e^{-h c E_i / k T}`, normalised to unity.

    Energies are measured from the lowest level, so very low temperatures put all of the population in the lowest
    level(s) instead of underflowing. A temperature of zero gives that limit exactly.

    :param energy: Level energies [cm^-1].
    :param g: Statistical weights.
    :param temperature: Kinetic temperature [K], scalar or shape ``(n,)``.
    :return: Populations of shape ``(nlev,)`` for a scalar temperature, else ``(n, nlev)``.
    """
    scalar = np.ndim(temperature) == 0
    temperature = np.atleast_1d(np.asarray(temperature, dtype=np.float64))
    d_energy = np.asarray(energy, dtype=np.float64) - np.min(energy)
    g = np.asarray(g, dtype=np.float64)

    pops = np.empty((temperature.shape[0], d_energy.shape[0]))
    ground = d_energy == 0.0
    for idx, temp in enumerate(temperature):
        if temp <= 0.0:
            q_lev = np.where(ground, g, 0.0)
        else:
            q_lev = g * np.exp(-const_hc_on_kB_cm * d_energy / temp)
        pops[idx] = q_lev / q_lev.sum()
    return pops[0] if scalar else pops


def build_fast_exp_table(
        num_bits: int = _FAST_EXP_NUM_BITS, x_max: float = _TAU_MAX
) -> npt.NDArray[np.float64]:
    """Tabulates :math:`e^{-k/2^{b}}` for :math:`k = 0 \\dots \\lceil x_{\\max} 2^{b} \\rceil`."""
    n_entries = int(math.ceil(x_max * (1 << num_bits))) + 1
    return np.exp(-np.arange(n_entries) / float(1 << num_bits))


@numba.njit(cache=True, nogil=True, inline="always")
def _taylor_exp_neg(r: float, order: int) -> float:
    term = 1.0
    total = 1.0
    for k in range(1, order + 1):
        term *= -r / k
        total += term
    return total


@numba.njit(cache=True, nogil=True)
def fast_exp_neg(x: float, table: npt.NDArray[np.float64], num_bits: int, taylor_order: int) -> float:
    """
    :math:`e^{-x}` from a lookup table with a Taylor correction over the table step.

    The table holds :math:`e^{-k/2^{b}}`; the remainder :math:`r < 2^{-b}` is corrected by a Taylor series of
    ``taylor_order`` terms, giving a relative error below :math:`r^{n+1}/(n+1)!`. Arguments outside the table fall
    back to :func:`math.exp`.
    """
    scale = 1 << num_bits
    if x < 0.0 or x * scale >= table.shape[0] - 1:
        return math.exp(-x)
    k = int(x * scale)
    r = x - k / scale
    return table[k] * _taylor_exp_neg(r, taylor_order)


@numba.njit(cache=True, nogil=True)
def exp_neg(x: float, table: npt.NDArray[np.float64], use_fast: bool) -> float:
    if use_fast:
        return fast_exp_neg(x, table, _FAST_EXP_NUM_BITS, _FAST_EXP_MAX_TAYLOR)
    return math.exp(-x)


@numba.njit(cache=True, nogil=True)
def remnant_source(dtau: float, exp_dtau: float, taylor_cutoff: float) -> float:
    """
    :math:`(1 - e^{-\\Delta\\tau}) / \\Delta\\tau`, the factor turning :math:`j_{\\nu} \\Delta s` into the emergent
    contribution of a segment. A second-order Taylor expansion is used for :math:`|\\Delta\\tau|` under the cutoff.
    """
    if abs(dtau) < taylor_cutoff:
        return 1.0 - dtau * (1.0 - dtau / 3.0) / 2.0
    return (1.0 - exp_dtau) / dtau


@numba.njit(cache=True, nogil=True, inline="always")
def gaussline(v: float, binv: float) -> float:
    """Unnormalised Gaussian line profile :math:`e^{-(v/b)^{2}}`; the :math:`1/(\\sqrt{\\pi} b)` factor lives in the
    line emissivity/opacity caches."""
    x = v * binv
    return math.exp(-x * x)


def doppler_binv(temperature: npt.NDArray[np.float64], turbulence: npt.NDArray[np.float64], weight: float):
    """
    Inverse Doppler parameter :math:`1/b`, with :math:`b^{2} = 2 k T / m + b_{\\text{turb}}^{2}`.

    :param temperature: Kinetic temperature [K].
    :param turbulence: Turbulent Doppler width [m/s].
    :param weight: Molecular weight [amu].
    :return: :math:`1/b` [s/m]; zero where the width vanishes.
    """
    b_sq = 2.0 * const_k_B * np.asarray(temperature) / (const_amu * weight) + np.asarray(turbulence) ** 2
    with np.errstate(divide="ignore"):
        return np.where(b_sq > 0, 1.0 / np.sqrt(np.where(b_sq > 0, b_sq, 1.0)), 0.0)
