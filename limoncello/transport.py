import math
import typing as t
from dataclasses import dataclass

import numba
import numpy as np
import numpy.typing as npt

from .blend import BlendSet
from .config import SolverConfig
from .grid import GridPointStore
from .nlte import LINE_HALF_WIDTH, build_fast_exp_table, exp_neg, gaussline, planck, remnant_source

# Outcome codes of a single ray walk.
RAY_KEPT = 0
RAY_LEFT_GRID = 1
RAY_TOO_LONG = 2


class GridPointScratch:
    """
    Working buffers of one worker, allocated once per driver run and reused for every point the worker visits.

    ``phot`` holds, per ray and global line, the intensity arriving at the edge of the local half segment in units
    of the species normalisation intensity.
    """

    def __init__(self, max_phot: int, n_lines: int, n_species: int, n_ran: int):
        self.max_phot = max_phot
        self.phot = np.zeros((max_phot, n_lines))
        self.half_first_ds = np.zeros(max_phot)
        self.valid = np.zeros(max_phot, dtype=np.bool_)
        self.vfac = np.zeros(max_phot)
        self.x = np.zeros(max_phot)
        self.direction = np.zeros((max_phot, 3))
        self.sub = np.zeros((max_phot, n_ran))
        self.w = np.zeros(n_species)
        self.jbar = np.zeros(n_lines)


@dataclass
class RayContext:
    """Read-only arrays a worker needs to walk rays through the current sweep's snapshot."""
    velocity: npt.NDArray[np.float64]
    sink: npt.NDArray[np.bool_]
    neigh_ptr: npt.NDArray[np.int64]
    neigh_idx: npt.NDArray[np.int64]
    neigh_dir: npt.NDArray[np.float64]
    neigh_ds: npt.NDArray[np.float64]
    line_j: npt.NDArray[np.float64]
    line_a: npt.NDArray[np.float64]
    knu: npt.NDArray[np.float64]
    dust: npt.NDArray[np.float64]
    binv: npt.NDArray[np.float64]
    line_species: npt.NDArray[np.int64]
    norm: npt.NDArray[np.float64]
    cmb: npt.NDArray[np.float64]
    blend_ptr: npt.NDArray[np.int64]
    blend_partner: npt.NDArray[np.int64]
    blend_deltav: npt.NDArray[np.float64]
    exp_table: npt.NDArray[np.float64]
    use_fast_exp: bool
    use_blend: bool
    tau_max: float
    maser_tau_floor: float
    taylor_cutoff: float
    max_steps: int

    @classmethod
    def from_store(
            cls, store: GridPointStore, config: SolverConfig, blends: t.Optional[BlendSet] = None
    ) -> "RayContext":
        n_lines = store.nline_total
        if blends is None:
            blends = BlendSet.empty(n_lines)
        cmb = np.array([planck(nu, config.tcmb) for nu in store.freq_all]) / np.where(
            store.norm_all > 0, store.norm_all, 1.0
        ) if n_lines > 0 else np.zeros(0)
        return cls(
            velocity=store.velocity,
            sink=store.sink,
            neigh_ptr=store.neigh_ptr,
            neigh_idx=store.neigh_idx,
            neigh_dir=store.neigh_dir,
            neigh_ds=store.neigh_ds,
            line_j=store.line_j,
            line_a=store.line_a,
            knu=store.knu,
            dust=store.dust,
            binv=store.binv,
            line_species=store.line_species,
            norm=store.norm_all,
            cmb=cmb,
            blend_ptr=blends.ptr,
            blend_partner=blends.partner,
            blend_deltav=blends.deltav,
            exp_table=build_fast_exp_table(x_max=max(config.tau_max, config.maser_tau_floor) + 1.0),
            use_fast_exp=config.fast_exp,
            use_blend=config.blend and blends.n_pairs > 0,
            tau_max=config.tau_max,
            maser_tau_floor=config.maser_tau_floor,
            taylor_cutoff=config.taylor_cutoff,
            max_steps=config.max_steps,
        )


@numba.njit(cache=True, nogil=True)
def _segment_profile(
        w: float,
        binv: float,
        v_start: float,
        v_end: float,
        f_start: float,
        sub: npt.NDArray[np.float64],
) -> float:
    """Gaussian profile averaged over stratified positions of a half segment spanning fractions ``f_start`` to
    ``f_start + 0.5`` of the link, with the projected velocity interpolated linearly along it."""
    n_ran = sub.shape[0]
    total = 0.0
    for k in range(n_ran):
        f = f_start + 0.5 * (k + sub[k]) / n_ran
        total += gaussline(w - (v_start + f * (v_end - v_start)), binv)
    return total / n_ran


@numba.njit(cache=True, nogil=True)
def _add_half_segment(
        point: int,
        ds: float,
        v_start: float,
        v_end: float,
        f_start: float,
        sub: npt.NDArray[np.float64],
        w: npt.NDArray[np.float64],
        line_j: npt.NDArray[np.float64],
        line_a: npt.NDArray[np.float64],
        knu: npt.NDArray[np.float64],
        dust: npt.NDArray[np.float64],
        binv: npt.NDArray[np.float64],
        line_species: npt.NDArray[np.int64],
        norm: npt.NDArray[np.float64],
        blend_ptr: npt.NDArray[np.int64],
        blend_partner: npt.NDArray[np.int64],
        blend_deltav: npt.NDArray[np.float64],
        use_blend: bool,
        exp_table: npt.NDArray[np.float64],
        use_fast_exp: bool,
        maser_tau_floor: float,
        taylor_cutoff: float,
        tau: npt.NDArray[np.float64],
        phot_row: npt.NDArray[np.float64],
) -> int:
    n_maser = 0
    for line in range(tau.shape[0]):
        s = line_species[line]
        phi = _segment_profile(w[s], binv[point, s], v_start, v_end, f_start, sub)
        jnu = line_j[point, line] * phi + dust[point, line] * knu[point, line]
        alpha = line_a[point, line] * phi + knu[point, line]
        if use_blend:
            for k in range(blend_ptr[line], blend_ptr[line + 1]):
                other = blend_partner[k]
                phi_other = _segment_profile(
                    w[s] + blend_deltav[k], binv[point, line_species[other]], v_start, v_end, f_start, sub
                )
                jnu += line_j[point, other] * phi_other
                alpha += line_a[point, other] * phi_other

        dtau = alpha * ds
        if tau[line] + dtau < -maser_tau_floor:
            dtau = -maser_tau_floor - tau[line]
            n_maser += 1
        exp_dtau = exp_neg(dtau, exp_table, use_fast_exp)
        phot_row[line] += (
                jnu / norm[line] * ds * remnant_source(dtau, exp_dtau, taylor_cutoff)
                * exp_neg(tau[line], exp_table, use_fast_exp)
        )
        tau[line] += dtau
    return n_maser


@numba.njit(cache=True, nogil=True)
def _walk_ray(
        origin: int,
        direction: npt.NDArray[np.float64],
        w: npt.NDArray[np.float64],
        sub: npt.NDArray[np.float64],
        velocity: npt.NDArray[np.float64],
        sink: npt.NDArray[np.bool_],
        neigh_ptr: npt.NDArray[np.int64],
        neigh_idx: npt.NDArray[np.int64],
        neigh_dir: npt.NDArray[np.float64],
        neigh_ds: npt.NDArray[np.float64],
        line_j: npt.NDArray[np.float64],
        line_a: npt.NDArray[np.float64],
        knu: npt.NDArray[np.float64],
        dust: npt.NDArray[np.float64],
        binv: npt.NDArray[np.float64],
        line_species: npt.NDArray[np.int64],
        norm: npt.NDArray[np.float64],
        cmb: npt.NDArray[np.float64],
        blend_ptr: npt.NDArray[np.int64],
        blend_partner: npt.NDArray[np.int64],
        blend_deltav: npt.NDArray[np.float64],
        use_blend: bool,
        exp_table: npt.NDArray[np.float64],
        use_fast_exp: bool,
        tau_max: float,
        maser_tau_floor: float,
        taylor_cutoff: float,
        max_steps: int,
        tau: npt.NDArray[np.float64],
        phot_row: npt.NDArray[np.float64],
) -> t.Tuple[int, float, int]:
    n_lines = tau.shape[0]
    for line in range(n_lines):
        tau[line] = 0.0
        phot_row[line] = 0.0

    v_origin = (
            velocity[origin, 0] * direction[0] + velocity[origin, 1] * direction[1]
            + velocity[origin, 2] * direction[2]
    )
    here = origin
    half_first_ds = 0.0
    n_maser = 0
    for step in range(max_steps):
        best = -1
        best_cos = 0.0
        for k in range(neigh_ptr[here], neigh_ptr[here + 1]):
            cos = (
                    neigh_dir[k, 0] * direction[0] + neigh_dir[k, 1] * direction[1]
                    + neigh_dir[k, 2] * direction[2]
            )
            if cos > best_cos:
                best_cos = cos
                best = k
        if best < 0:
            return RAY_LEFT_GRID, half_first_ds, n_maser

        there = neigh_idx[best]
        half_ds = 0.5 * neigh_ds[best]
        v_here = (
                velocity[here, 0] * direction[0] + velocity[here, 1] * direction[1]
                + velocity[here, 2] * direction[2]
        ) - v_origin
        v_there = (
                velocity[there, 0] * direction[0] + velocity[there, 1] * direction[1]
                + velocity[there, 2] * direction[2]
        ) - v_origin

        if step == 0:
            half_first_ds = half_ds
        else:
            n_maser += _add_half_segment(
                here, half_ds, v_here, v_there, 0.0, sub, w, line_j, line_a, knu, dust, binv, line_species,
                norm, blend_ptr, blend_partner, blend_deltav, use_blend, exp_table, use_fast_exp,
                maser_tau_floor, taylor_cutoff, tau, phot_row,
            )

        if sink[there]:
            for line in range(n_lines):
                phot_row[line] += math.exp(-tau[line]) * cmb[line]
            return RAY_KEPT, half_first_ds, n_maser

        n_maser += _add_half_segment(
            there, half_ds, v_here, v_there, 0.5, sub, w, line_j, line_a, knu, dust, binv, line_species,
            norm, blend_ptr, blend_partner, blend_deltav, use_blend, exp_table, use_fast_exp,
            maser_tau_floor, taylor_cutoff, tau, phot_row,
        )

        opaque = True
        for line in range(n_lines):
            if tau[line] <= tau_max:
                opaque = False
                break
        if opaque:
            return RAY_KEPT, half_first_ds, n_maser
        here = there
    return RAY_TOO_LONG, half_first_ds, n_maser


@numba.njit(cache=True, nogil=True)
def _trace_rays(
        origin: int,
        nphot: int,
        directions: npt.NDArray[np.float64],
        x: npt.NDArray[np.float64],
        sub: npt.NDArray[np.float64],
        velocity: npt.NDArray[np.float64],
        sink: npt.NDArray[np.bool_],
        neigh_ptr: npt.NDArray[np.int64],
        neigh_idx: npt.NDArray[np.int64],
        neigh_dir: npt.NDArray[np.float64],
        neigh_ds: npt.NDArray[np.float64],
        line_j: npt.NDArray[np.float64],
        line_a: npt.NDArray[np.float64],
        knu: npt.NDArray[np.float64],
        dust: npt.NDArray[np.float64],
        binv: npt.NDArray[np.float64],
        line_species: npt.NDArray[np.int64],
        norm: npt.NDArray[np.float64],
        cmb: npt.NDArray[np.float64],
        blend_ptr: npt.NDArray[np.int64],
        blend_partner: npt.NDArray[np.int64],
        blend_deltav: npt.NDArray[np.float64],
        use_blend: bool,
        exp_table: npt.NDArray[np.float64],
        use_fast_exp: bool,
        tau_max: float,
        maser_tau_floor: float,
        taylor_cutoff: float,
        max_steps: int,
        w: npt.NDArray[np.float64],
        phot: npt.NDArray[np.float64],
        half_first_ds: npt.NDArray[np.float64],
        valid: npt.NDArray[np.bool_],
) -> t.Tuple[int, int, int]:
    n_species = w.shape[0]
    tau = np.zeros(phot.shape[1])
    n_maser = 0
    n_left = 0
    n_long = 0
    for ray in range(nphot):
        # Photon velocity offset from each species' line centre in the frame of the origin.
        for s in range(n_species):
            b = binv[origin, s]
            w[s] = x[ray] / b if b > 0.0 else 0.0
        outcome, hfds, masers = _walk_ray(
            origin, directions[ray], w, sub[ray], velocity, sink, neigh_ptr, neigh_idx, neigh_dir,
            neigh_ds, line_j, line_a, knu, dust, binv, line_species, norm, cmb, blend_ptr, blend_partner,
            blend_deltav, use_blend, exp_table, use_fast_exp, tau_max, maser_tau_floor, taylor_cutoff, max_steps,
            tau, phot[ray],
        )
        half_first_ds[ray] = hfds
        valid[ray] = outcome == RAY_KEPT
        n_maser += masers
        if outcome == RAY_LEFT_GRID:
            n_left += 1
        elif outcome == RAY_TOO_LONG:
            n_long += 1
    return n_maser, n_left, n_long


def sample_photons(
        point: int,
        nphot: int,
        context: RayContext,
        scratch: GridPointScratch,
        rng: np.random.Generator,
) -> t.Tuple[int, int, int]:
    """
    Traces ``nphot`` rays from a point through the snapshot and fills the worker scratch.

    Directions are isotropic and every ray carries a frequency offset drawn uniformly within
    ``LINE_HALF_WIDTH`` Doppler widths of line centre, weighted by ``vfac``.

    :return: ``(masing segments, rays that left the grid, rays over the step limit)``.
    """
    cos_theta = rng.uniform(-1.0, 1.0, nphot)
    phi = rng.uniform(0.0, 2.0 * np.pi, nphot)
    sin_theta = np.sqrt(1.0 - cos_theta ** 2)
    scratch.direction[:nphot, 0] = sin_theta * np.cos(phi)
    scratch.direction[:nphot, 1] = sin_theta * np.sin(phi)
    scratch.direction[:nphot, 2] = cos_theta
    scratch.x[:nphot] = rng.uniform(-LINE_HALF_WIDTH, LINE_HALF_WIDTH, nphot)
    scratch.vfac[:nphot] = np.exp(-scratch.x[:nphot] ** 2)
    scratch.sub[:nphot] = rng.random((nphot, scratch.sub.shape[1]))

    return _trace_rays(
        point, nphot, scratch.direction, scratch.x, scratch.sub, context.velocity,
        context.sink, context.neigh_ptr, context.neigh_idx, context.neigh_dir, context.neigh_ds, context.line_j,
        context.line_a, context.knu, context.dust, context.binv, context.line_species, context.norm, context.cmb,
        context.blend_ptr, context.blend_partner, context.blend_deltav, context.use_blend, context.exp_table,
        context.use_fast_exp, context.tau_max, context.maser_tau_floor, context.taylor_cutoff, context.max_steps,
        scratch.w, scratch.phot, scratch.half_first_ds, scratch.valid,
    )


@numba.njit(cache=True, nogil=True)
def _local_jbar(
        lo: int,
        hi: int,
        nphot: int,
        phot: npt.NDArray[np.float64],
        half_first_ds: npt.NDArray[np.float64],
        valid: npt.NDArray[np.bool_],
        x: npt.NDArray[np.float64],
        vfac: npt.NDArray[np.float64],
        binv: npt.NDArray[np.float64],
        line_species: npt.NDArray[np.int64],
        line_j: npt.NDArray[np.float64],
        line_a: npt.NDArray[np.float64],
        knu: npt.NDArray[np.float64],
        dust: npt.NDArray[np.float64],
        norm: npt.NDArray[np.float64],
        blend_ptr: npt.NDArray[np.int64],
        blend_partner: npt.NDArray[np.int64],
        blend_deltav: npt.NDArray[np.float64],
        use_blend: bool,
        maser_tau_floor: float,
        taylor_cutoff: float,
        jbar: npt.NDArray[np.float64],
) -> float:
    vsum = 0.0
    for line in range(lo, hi):
        jbar[line] = 0.0
    for ray in range(nphot):
        if not valid[ray]:
            continue
        vsum += vfac[ray]
        for line in range(lo, hi):
            s = line_species[line]
            w = x[ray] / binv[s] if binv[s] > 0.0 else 0.0
            jnu = line_j[line] * vfac[ray] + dust[line] * knu[line]
            alpha = line_a[line] * vfac[ray] + knu[line]
            if use_blend:
                for k in range(blend_ptr[line], blend_ptr[line + 1]):
                    other = blend_partner[k]
                    phi_other = gaussline(w + blend_deltav[k], binv[line_species[other]])
                    jnu += line_j[other] * phi_other
                    alpha += line_a[other] * phi_other
            dtau = alpha * half_first_ds[ray]
            if dtau < -maser_tau_floor:
                dtau = -maser_tau_floor
            exp_dtau = math.exp(-dtau)
            local = jnu / norm[line] * half_first_ds[ray] * remnant_source(dtau, exp_dtau, taylor_cutoff)
            jbar[line] += vfac[ray] * (phot[ray, line] * exp_dtau + local)
    if vsum > 0.0:
        for line in range(lo, hi):
            jbar[line] = norm[line] * jbar[line] / vsum
    return vsum


def get_jbar(
        point: int,
        species_idx: int,
        nphot: int,
        context: RayContext,
        scratch: GridPointScratch,
        store: GridPointStore,
        line_j: npt.NDArray[np.float64],
        line_a: npt.NDArray[np.float64],
) -> t.Optional[npt.NDArray[np.float64]]:
    """
    Mean intensity of one species' lines at a point [W m^-2 Hz^-1 sr^-1].

    The rays in ``scratch`` supply the intensity arriving from beyond the local half segment; the local half
    segment is recomputed from the emissivity/opacity in ``line_j``/``line_a`` (all lines, the species' slice
    reflecting its current populations), so the returned estimate responds to the populations being iterated.

    :return: ``jbar`` per line of the species, or ``None`` when no ray survived.
    """
    lines = store.line_slice(species_idx)
    vsum = _local_jbar(
        lines.start, lines.stop, nphot, scratch.phot, scratch.half_first_ds, scratch.valid, scratch.x,
        scratch.vfac, store.binv[point], context.line_species, line_j, line_a, context.knu[point],
        context.dust[point], context.norm, context.blend_ptr, context.blend_partner, context.blend_deltav,
        context.use_blend, context.maser_tau_floor, context.taylor_cutoff, scratch.jbar,
    )
    if vsum <= 0.0:
        return None
    return scratch.jbar[lines].copy()


def background_jbar(context: RayContext, store: GridPointStore, species_idx: int) -> npt.NDArray[np.float64]:
    """Mean intensity of the unattenuated background radiation field."""
    lines = store.line_slice(species_idx)
    return context.cmb[lines] * context.norm[lines]
