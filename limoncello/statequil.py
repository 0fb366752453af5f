import typing as t
import warnings

import numpy as np
import numpy.typing as npt
from scipy.linalg import LinAlgWarning, lapack, lu_factor, lu_solve

from .config import SolverConfig
from .errors import NumericDomainWarning, SingularSystemError
from .grid import GridPointStore, line_emissivity_opacity
from .molecule import MolecularSpecies
from .transport import GridPointScratch, RayContext, background_jbar, get_jbar

WarningList = t.List[t.Tuple[t.Type[UserWarning], str]]


def build_rate_matrix(
        species: MolecularSpecies,
        jbar: npt.NDArray[np.float64],
        partner_density: npt.NDArray[np.float64],
        partner_rates: t.Sequence[t.Tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]],
) -> npt.NDArray[np.float64]:
    """
    Transition rate matrix of one point.

    ``R[i, j]`` is the total rate [1/s] from level ``i`` to level ``j``; the diagonal holds minus the total outflow,
    so every row sums to zero.

    :param species: The species.
    :param jbar: Mean intensity per line [W m^-2 Hz^-1 sr^-1].
    :param partner_density: Number density of each collision partner [m^-3].
    :param partner_rates: ``(down, up)`` rate coefficients per partner at the point's kinetic temperature [m^3/s].
    :return: ``R`` of shape ``(nlev, nlev)``.
    """
    nlev = species.nlev
    rates = np.zeros((nlev, nlev))
    np.add.at(rates, (species.upper, species.lower), species.a_ul + species.b_ul * jbar)
    np.add.at(rates, (species.lower, species.upper), species.b_lu * jbar)

    for table, density, (down, up) in zip(species.collisions, partner_density, partner_rates):
        if density <= 0:
            continue
        hi = np.maximum(table.upper, table.lower)
        lo = np.minimum(table.upper, table.lower)
        np.add.at(rates, (hi, lo), down * density)
        np.add.at(rates, (lo, hi), up * density)

    np.fill_diagonal(rates, 0.0)
    rates[np.diag_indices(nlev)] = -rates.sum(axis=1)
    return rates


def solve_populations(
        rates: npt.NDArray[np.float64], point: int, species: str, rcond_min: float
) -> npt.NDArray[np.float64]:
    """
    Solves the statistical equilibrium :math:`R^{T} n = 0` with :math:`\\sum n = 1`.

    The last balance equation is replaced by the normalisation and the dense system is solved by LU factorisation.

    :raises SingularSystemError: For disconnected levels, a singular or ill-conditioned system, or non-finite output.
    """
    nlev = rates.shape[0]
    if nlev == 1:
        return np.ones(1)

    off_diag = rates.copy()
    np.fill_diagonal(off_diag, 0.0)
    disconnected = np.nonzero((off_diag.sum(axis=1) == 0) & (off_diag.sum(axis=0) == 0))[0]
    if disconnected.size > 0:
        raise SingularSystemError(point, species, f"levels {disconnected.tolist()} are disconnected")
    if not np.all(np.isfinite(rates)):
        raise SingularSystemError(point, species, "non-finite rates")

    scale = np.max(np.abs(rates))
    system = rates.T / scale
    system[-1, :] = 1.0
    rhs = np.zeros(nlev)
    rhs[-1] = 1.0

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", LinAlgWarning)
        lu, piv = lu_factor(system)
    if np.any(np.diag(lu) == 0.0):
        raise SingularSystemError(point, species, "exactly singular factorisation")
    rcond, info = lapack.dgecon(lu, np.linalg.norm(system, 1), norm="1")
    if info != 0 or rcond < rcond_min:
        raise SingularSystemError(point, species, f"reciprocal condition number {rcond:.3g}")

    pops = lu_solve((lu, piv), rhs)
    if not np.all(np.isfinite(pops)):
        raise SingularSystemError(point, species, "non-finite populations")
    return pops


def check_populations(
        pops: npt.NDArray[np.float64], eps: float, pop_floor: float
) -> t.Tuple[npt.NDArray[np.float64], t.Optional[str]]:
    """
    Floors populations at ``pop_floor`` and renormalises them. A message is returned when the raw solution was
    negative beyond round-off or did not sum to unity within ``eps``.
    """
    message = None
    total = pops.sum()
    if np.any(pops < -eps):
        message = f"negative populations (min {pops.min():.3g}) clamped"
    elif abs(total - 1.0) > eps:
        message = f"populations summed to {total:.12g}, renormalised"
    fixed = np.maximum(pops, pop_floor)
    return fixed / fixed.sum(), message


def _fractional_change(
        new: npt.NDArray[np.float64], old: npt.NDArray[np.float64], min_pop: float
) -> float:
    mask = new > min_pop
    if not np.any(mask):
        return 0.0
    return float(np.max(np.abs(new[mask] - old[mask]) / new[mask]))


def stateq(
        point: int,
        species_idx: int,
        nphot: int,
        store: GridPointStore,
        context: RayContext,
        scratch: GridPointScratch,
        config: SolverConfig,
) -> t.Tuple[npt.NDArray[np.float64], WarningList]:
    """
    ALI inner iteration for one point and species.

    The rays in ``scratch`` are fixed; only the local half segment of each ray responds to the populations, so the
    loop converges to the populations consistent with the sampled external field.

    :return: The new populations and the warnings raised on the way.
    """
    sp = store.species[species_idx]
    raised: WarningList = []
    nmol = store.nmol[species_idx][point]
    binv = store.binv[point, species_idx]
    partner_density = store.partner_density[species_idx][point]
    partner_rates = [(down[point], up[point]) for down, up in store.partner_rates[species_idx]]
    t_kin = store.temperature[point, 0]

    abundance = store.abundance[point, species_idx]
    if sp.npart > 0 and abundance > 0 and (partner_density.sum() <= 0 or t_kin <= 0):
        raise SingularSystemError(
            point, sp.name, f"partner density {partner_density.sum():.3g} m^-3 at T={t_kin:.3g} K"
        )

    pops = store.pops[species_idx][point].copy()
    lines = store.line_slice(species_idx)
    line_j = context.line_j[point].copy()
    line_a = context.line_a[point].copy()
    fallback = None

    previous, two_back = pops.copy(), pops.copy()
    diff = 1.0
    iteration = 0
    while (diff > config.tol and iteration < config.ali_max_iter) or iteration < config.ali_min_iter:
        line_j[lines], line_a[lines] = line_emissivity_opacity(sp, pops, nmol, binv)
        jbar = get_jbar(point, species_idx, nphot, context, scratch, store, line_j, line_a)
        if jbar is None:
            if fallback is None:
                fallback = background_jbar(context, store, species_idx)
                raised.append((NumericDomainWarning, f"{sp.name}: no valid rays, using background intensity"))
            jbar = fallback

        rates = build_rate_matrix(sp, jbar, partner_density, partner_rates)
        pops, message = check_populations(
            solve_populations(rates, point, sp.name, config.rcond_min), config.eps, config.pop_floor
        )
        if message is not None and (NumericDomainWarning, f"{sp.name}: {message}") not in raised:
            raised.append((NumericDomainWarning, f"{sp.name}: {message}"))

        diff = _fractional_change(pops, two_back, config.min_pop)
        two_back, previous = previous, pops.copy()
        iteration += 1
    return pops, raised
