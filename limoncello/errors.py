import enum
import typing as t
from dataclasses import dataclass, field

import polars as pl


class LimoncelloError(Exception):
    """Base class for errors raised by the population solver."""


class FatalConfigError(LimoncelloError):
    """Malformed molecular data, configuration or grid. Raised before any sweep starts."""


class SingularSystemError(LimoncelloError):
    """The statistical-equilibrium system of a point is singular or degenerate."""

    def __init__(self, point: int, species: str, reason: str):
        self.point = point
        self.species = species
        self.reason = reason
        super().__init__(f"[P{point}] {species}: singular rate matrix ({reason}).")


class NonConvergenceWarning(UserWarning):
    """A point used its whole sweep budget without meeting the convergence run length."""


class NumericDomainWarning(UserWarning):
    """A population estimate left the valid range and was clamped/renormalised."""


class PointStatus(enum.IntEnum):
    UNCONVERGED = 0
    CONVERGED = 1
    EXHAUSTED = 2
    ERRORED = 3
    SINK = 4


@dataclass
class PointReport:
    point: int
    status: PointStatus = PointStatus.UNCONVERGED
    sweeps: int = 0
    nphot: int = 0
    last_change: float = float("nan")
    snr: float = float("nan")
    masers: int = 0
    errors: t.List[str] = field(default_factory=list)
    warnings: t.List[str] = field(default_factory=list)

    def record_warning(self, category: t.Type[UserWarning], message: str) -> None:
        self.warnings.append(f"{category.__name__}: {message}")

    def record_error(self, error: Exception) -> None:
        self.errors.append(f"{type(error).__name__}: {error}")


@dataclass
class RunReport:
    """Per-point outcome of a driver run."""
    points: t.Dict[int, PointReport] = field(default_factory=dict)
    sweeps: int = 0
    aborted: bool = False

    def __getitem__(self, point: int) -> PointReport:
        if point not in self.points:
            self.points[point] = PointReport(point)
        return self.points[point]

    def count(self, status: PointStatus) -> int:
        return sum(1 for report in self.points.values() if report.status == status)

    @property
    def n_converged(self) -> int:
        return self.count(PointStatus.CONVERGED)

    @property
    def n_not_converged(self) -> int:
        return self.count(PointStatus.EXHAUSTED) + self.count(PointStatus.UNCONVERGED)

    @property
    def n_errored(self) -> int:
        return self.count(PointStatus.ERRORED)

    @property
    def n_warnings(self) -> int:
        return sum(len(report.warnings) for report in self.points.values())

    def summary(self) -> str:
        return (
            f"{self.sweeps} sweeps: {self.n_converged} converged, {self.n_not_converged} not converged, "
            f"{self.n_errored} errored, {self.count(PointStatus.SINK)} sinks ({self.n_warnings} warnings)."
        )

    def to_frame(self) -> pl.DataFrame:
        ordered = [self.points[key] for key in sorted(self.points)]
        return pl.DataFrame({
            "point": [r.point for r in ordered],
            "status": [r.status.name for r in ordered],
            "sweeps": [r.sweeps for r in ordered],
            "nphot": [r.nphot for r in ordered],
            "last_change": [r.last_change for r in ordered],
            "snr": [r.snr for r in ordered],
            "masers": [r.masers for r in ordered],
            "n_errors": [len(r.errors) for r in ordered],
            "n_warnings": [len(r.warnings) for r in ordered],
        }, schema={
            "point": pl.Int64,
            "status": pl.Utf8,
            "sweeps": pl.Int64,
            "nphot": pl.Int64,
            "last_change": pl.Float64,
            "snr": pl.Float64,
            "masers": pl.Int64,
            "n_errors": pl.Int64,
            "n_warnings": pl.Int64,
        })
