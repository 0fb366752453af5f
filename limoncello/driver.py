import threading
import time
import typing as t
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field

import numpy as np
import numpy.typing as npt

from .blend import BlendSet, detect_blends
from .checkpoint import read_checkpoint, write_checkpoint
from .config import SolverConfig, log
from .dust import DustOpacity
from .errors import (
    NonConvergenceWarning,
    NumericDomainWarning,
    PointStatus,
    RunReport,
    SingularSystemError,
)
from .grid import GridPointStore
from .molecule import MolecularSpecies
from .statequil import WarningList, stateq
from .transport import GridPointScratch, RayContext, sample_photons

_SNR_THRESHOLD = 3.0


@dataclass
class _PointUpdate:
    point: int
    nphot: int
    pops: t.Optional[t.List[npt.NDArray[np.float64]]] = None
    warnings: WarningList = field(default_factory=list)
    error: t.Optional[SingularSystemError] = None
    masers: int = 0


class PopulationDriver:
    """
    Iterates the level populations of every non-sink grid point to convergence.

    Each sweep traces rays from every active point through a snapshot of the grid, solves the statistical
    equilibrium of each species with the ALI inner loop, and commits all new populations together once every worker
    has finished. Points whose populations keep changing by ``tol`` or more get twice the rays in the next sweep.
    """

    def __init__(
            self,
            store: GridPointStore,
            species: t.Sequence[MolecularSpecies],
            config: t.Optional[SolverConfig] = None,
            dust_opacity: t.Optional[DustOpacity] = None,
    ):
        self.store = store
        self.config = config if config is not None else SolverConfig()
        if dust_opacity is None and self.config.dust_file is not None:
            dust_opacity = DustOpacity.from_file(self.config.dust_file)
        store.attach_species(species, self.config, dust_opacity)

        if self.config.blend:
            self.blends = detect_blends(store.species, self.config.blend_threshold)
        else:
            self.blends = BlendSet.empty(store.nline_total)

        self.abort = threading.Event()
        self.sweep = 0
        self.nphot = np.full(store.n_points, self.config.ininphot, dtype=np.int64)
        self.run_length = np.zeros(store.n_points, dtype=np.int64)
        self.mean_changes: t.List[float] = []
        self.history = [
            np.zeros((self.config.history_length, store.n_points, sp.nlev)) for sp in store.species
        ]

        self.report = RunReport()
        for point in range(store.n_points):
            self.report[point].status = PointStatus(int(store.status[point]))
            self.report[point].nphot = self.config.ininphot

    def initialise(self) -> None:
        """Initial populations: LTE at sinks; checkpoint, LTE or Boltzmann at the background temperature elsewhere."""
        store = self.store
        sinks = np.nonzero(store.sink)[0]
        others = np.nonzero(~store.sink)[0]
        if self.config.init_lte or self.config.lte_only:
            store.set_lte()
            log.info(f"[I0] Initial LTE populations at {store.n_points} points.")
        else:
            store.set_boltzmann(self.config.tcmb, others)
            store.set_lte(sinks)
            log.info(f"[I0] Initial Boltzmann populations at T={self.config.tcmb} K.")
        if self.config.restart is not None and not self.config.lte_only:
            read_checkpoint(store, self.config.restart)
            for point in np.nonzero(store.status == PointStatus.CONVERGED)[0]:
                self.report[point].status = PointStatus.CONVERGED

    def run(self) -> RunReport:
        config = self.config
        store = self.store
        self.initialise()

        if config.lte_only:
            active = store.active_points()
            store.status[active] = PointStatus.CONVERGED
            for point in active:
                self.report[point].status = PointStatus.CONVERGED
            store.refresh_line_caches()
            log.info(f"[I0] LTE only: {active.size} points set to LTE, no sweeps.")
            return self._finish()

        context = RayContext.from_store(store, config, self.blends)
        scratches = [
            GridPointScratch(config.max_phot, store.nline_total, store.n_species, config.n_ran_per_segment)
            for _ in range(config.n_threads)
        ]
        rngs = [np.random.default_rng(seq) for seq in np.random.SeedSequence(config.seed).spawn(config.n_threads)]

        with ThreadPoolExecutor(max_workers=config.n_threads, thread_name_prefix="limoncello") as executor:
            while self.sweep < config.max_iter:
                active = store.active_points()
                if active.size == 0:
                    break
                start_time = time.perf_counter()
                store.refresh_line_caches()
                futures = [
                    executor.submit(self._sweep_partition, partition, scratches[worker], rngs[worker], context)
                    for worker, partition in enumerate(np.array_split(active, config.n_threads))
                    if partition.size > 0
                ]
                wait(futures)
                updates = [update for future in futures for update in future.result()]

                self.sweep += 1
                fatal = self._commit(updates)
                if fatal is not None:
                    self.report.aborted = True
                    self.report.sweeps = self.sweep
                    log.error(f"[I{self.sweep}] Aborting: {fatal}")
                    raise fatal
                self._statistics(active, time.perf_counter() - start_time)

        return self._finish()

    def _sweep_partition(
            self,
            points: npt.NDArray[np.int64],
            scratch: GridPointScratch,
            rng: np.random.Generator,
            context: RayContext,
    ) -> t.List[_PointUpdate]:
        updates = []
        for point in points:
            if self.abort.is_set():
                break
            update = _PointUpdate(point=int(point), nphot=int(self.nphot[point]))
            update.masers, _, n_long = sample_photons(int(point), update.nphot, context, scratch, rng)
            if n_long > 0:
                update.warnings.append((
                    NumericDomainWarning, f"{n_long}/{update.nphot} rays exceeded {self.config.max_steps} steps"
                ))
            try:
                update.pops = []
                for species_idx in range(self.store.n_species):
                    pops, raised = stateq(
                        int(point), species_idx, update.nphot, self.store, context, scratch, self.config
                    )
                    update.pops.append(pops)
                    update.warnings.extend(raised)
            except SingularSystemError as e:
                update.pops = None
                update.error = e
                if self.config.on_singular == "fatal":
                    self.abort.set()
            updates.append(update)
        return updates

    def _commit(self, updates: t.List[_PointUpdate]) -> t.Optional[SingularSystemError]:
        config = self.config
        store = self.store
        fatal = None
        changes = []
        for update in updates:
            point = update.point
            report = self.report[point]
            report.masers += update.masers
            for category, message in update.warnings:
                report.record_warning(category, message)
                log.warning(f"[P{point}] {message}")

            if update.error is not None:
                report.record_error(update.error)
                log.error(f"[I{self.sweep}] {update.error}")
                if config.on_singular == "fatal":
                    fatal = fatal or update.error
                else:
                    store.status[point] = PointStatus.ERRORED
                    report.status = PointStatus.ERRORED
                continue

            change = 0.0
            for species_idx, pops in enumerate(update.pops):
                old = store.pops[species_idx][point]
                mask = pops > config.min_pop
                if np.any(mask):
                    change = max(change, float(np.max(np.abs(pops[mask] - old[mask]) / pops[mask])))
                store.pops[species_idx][point] = pops
            changes.append(change)

            report.sweeps += 1
            report.nphot = update.nphot
            report.last_change = change
            if change < config.tol:
                self.run_length[point] += 1
                if self.run_length[point] >= config.goal:
                    store.status[point] = PointStatus.CONVERGED
                    report.status = PointStatus.CONVERGED
            else:
                self.run_length[point] = 0
                self.nphot[point] = min(2 * self.nphot[point], config.max_phot)

        self.mean_changes.append(float(np.mean(changes)) if changes else 0.0)
        return fatal

    def _statistics(self, active: npt.NDArray[np.int64], duration: float) -> None:
        """Signal-to-noise of each point's populations over the last ``history_length`` sweeps."""
        slot = (self.sweep - 1) % self.config.history_length
        for species_idx, pops in enumerate(self.store.pops):
            self.history[species_idx][slot, active] = pops[active]

        snr_frac = float("nan")
        if self.sweep >= self.config.history_length:
            snr = np.full(active.shape[0], np.inf)
            for history in self.history:
                mean = history[:, active].mean(axis=0)
                sigma = history[:, active].std(axis=0, ddof=1)
                with np.errstate(divide="ignore", invalid="ignore"):
                    level_snr = np.where(sigma > 0, mean / sigma, np.inf)
                level_snr = np.where(mean > self.config.min_pop, level_snr, np.inf)
                snr = np.minimum(snr, level_snr.min(axis=1))
            for point, value in zip(active, snr):
                self.report[point].snr = float(value)
            snr_frac = float(np.mean(snr > _SNR_THRESHOLD))

        last_changes = [self.report[point].last_change for point in active]
        last_changes = [change for change in last_changes if np.isfinite(change)]
        median_change = float(np.median(last_changes)) if last_changes else float("nan")
        n_converged = int((self.store.status == PointStatus.CONVERGED).sum())
        log.info((
            f"[I{self.sweep}] Active = {active.size}, converged = {n_converged}"
            f", median change = {median_change:.3g}, SNR>{_SNR_THRESHOLD:g} fraction = {snr_frac:.2f}"
            f" ({duration:.2f}s)."
        ))

    def _finish(self) -> RunReport:
        report = self.report
        report.sweeps = self.sweep
        for point in self.store.active_points():
            self.store.status[point] = PointStatus.EXHAUSTED
            report[point].status = PointStatus.EXHAUSTED
            message = (
                f"not converged after {self.sweep} sweeps (last change {report[point].last_change:.3g}, "
                f"{self.run_length[point]}/{self.config.goal} below tolerance)"
            )
            report[point].record_warning(NonConvergenceWarning, message)
            log.warning(f"[P{point}] {message}")

        log.info(f"[I{self.sweep}] {report.summary()}")
        if self.config.checkpoint is not None:
            write_checkpoint(self.store, self.config.checkpoint)
        return report


def run_populations(
        store: GridPointStore,
        species: t.Sequence[MolecularSpecies],
        config: t.Optional[SolverConfig] = None,
        dust_opacity: t.Optional[DustOpacity] = None,
) -> RunReport:
    """Solves the level populations of ``species`` at every point of ``store``; see :class:`PopulationDriver`."""
    return PopulationDriver(store, species, config, dust_opacity).run()
