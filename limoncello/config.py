import logging
import os
import pathlib
import typing as t
from dataclasses import dataclass, field, fields

import numba

from .errors import FatalConfigError

output_dir = pathlib.Path(os.environ.get("LIMONCELLO_OUTPUT_DIR", pathlib.Path(os.getcwd()) / "./outputs")).resolve()
output_dir.mkdir(parents=True, exist_ok=True)

log = logging.getLogger("limoncello")
log.setLevel(logging.INFO)

# stream_handler = logging.StreamHandler()
# stream_formatter = logging.Formatter("%(asctime)s [%(levelname)s]  %(message)s")
# stream_handler.setFormatter(stream_formatter)
# log.addHandler(stream_handler)

file_handler = logging.FileHandler(
    filename=(output_dir / "limoncello.log").resolve(), encoding="utf-8", mode="a"
)
file_formatter = logging.Formatter("%(asctime)s [%(threadName)-12.12s] [%(levelname)-5.5s]  %(message)s")
file_handler.setFormatter(file_formatter)
log.addHandler(file_handler)

log.info(f"Writing outputs to {output_dir}.")

_DEFAULT_NUM_THREADS = 1
if numba.get_num_threads() < _DEFAULT_NUM_THREADS:
    log.info(f"Numba defaulting to {numba.get_num_threads()} threads: setting to {_DEFAULT_NUM_THREADS}.")
    numba.set_num_threads(_DEFAULT_NUM_THREADS)

_MAX_PHOT = 10000
_ININPHOT = 9
_MIN_POP = 1e-6
_POP_FLOOR = 1e-30
_POP_SUM_EPS = 1e-9
_TOL = 1e-6
_MAXITER = 50
_ALI_MIN_ITER = 5
_GOAL = 50
_BLENDMASK = 1.0e4
_N_RAN_PER_SEGMENT = 3
_FAST_EXP_MAX_TAYLOR = 3
_FAST_EXP_NUM_BITS = 8
_ORTHO_PARA_RATIO = 3.0
_TCMB = 2.725
_TAU_MAX = 30.0
_MASER_TAU_FLOOR = 30.0
_TAYLOR_CUTOFF = 1e-3
_RCOND_MIN = 1e-14
_MAX_STEPS = 10000
_HISTORY_LENGTH = 5

_SINGULAR_POLICIES = ("skip", "fatal")


@dataclass
class SolverConfig:
    """
    Options recognised by the population solver.

    The defaults reproduce the constants of the reference line modelling engine; tests and small models usually
    relax ``tol`` and ``goal`` since a stochastic estimate cannot reach :math:`10^{-6}` fractional changes.
    """
    ininphot: int = _ININPHOT
    max_phot: int = _MAX_PHOT
    tol: float = _TOL
    goal: int = _GOAL
    max_iter: int = _MAXITER
    lte_only: bool = False
    init_lte: bool = False
    n_threads: int = _DEFAULT_NUM_THREADS
    collision_partners: t.Optional[t.Dict[int, int]] = None
    blend: bool = False
    blend_threshold: float = _BLENDMASK
    tcmb: float = _TCMB
    seed: int = 1234
    ali_max_iter: int = _MAXITER
    ali_min_iter: int = _ALI_MIN_ITER
    min_pop: float = _MIN_POP
    pop_floor: float = _POP_FLOOR
    eps: float = _POP_SUM_EPS
    rcond_min: float = _RCOND_MIN
    tau_max: float = _TAU_MAX
    maser_tau_floor: float = _MASER_TAU_FLOOR
    max_steps: int = _MAX_STEPS
    n_ran_per_segment: int = _N_RAN_PER_SEGMENT
    taylor_cutoff: float = _TAYLOR_CUTOFF
    fast_exp: bool = True
    on_singular: str = "skip"
    restart: t.Optional[pathlib.Path] = None
    checkpoint: t.Optional[pathlib.Path] = None
    dust_file: t.Optional[pathlib.Path] = None
    ortho_para_ratio: float = _ORTHO_PARA_RATIO
    history_length: int = field(default=_HISTORY_LENGTH)

    def __post_init__(self):
        if self.ininphot < 1:
            raise FatalConfigError(f"ininphot must be positive, got {self.ininphot}.")
        if self.max_phot < self.ininphot:
            raise FatalConfigError(f"max_phot ({self.max_phot}) is below ininphot ({self.ininphot}).")
        if self.tol <= 0:
            raise FatalConfigError(f"tol must be positive, got {self.tol}.")
        if self.goal < 1:
            raise FatalConfigError(f"goal must be at least 1, got {self.goal}.")
        if self.max_iter < 0:
            raise FatalConfigError(f"max_iter cannot be negative, got {self.max_iter}.")
        if self.n_threads < 1:
            raise FatalConfigError(f"n_threads must be at least 1, got {self.n_threads}.")
        if self.ali_max_iter < 1 or self.ali_min_iter < 1:
            raise FatalConfigError("ALI iteration limits must be at least 1.")
        if self.blend_threshold <= 0:
            raise FatalConfigError(f"blend_threshold must be positive, got {self.blend_threshold}.")
        if self.tcmb < 0:
            raise FatalConfigError(f"tcmb cannot be negative, got {self.tcmb}.")
        if self.n_ran_per_segment < 1:
            raise FatalConfigError(f"n_ran_per_segment must be at least 1, got {self.n_ran_per_segment}.")
        if self.max_steps < 1:
            raise FatalConfigError(f"max_steps must be at least 1, got {self.max_steps}.")
        if not 0 < self.pop_floor < self.min_pop:
            raise FatalConfigError("pop_floor must be positive and below min_pop.")
        if self.eps <= 0:
            raise FatalConfigError(f"eps must be positive, got {self.eps}.")
        if self.ortho_para_ratio < 0:
            raise FatalConfigError(f"ortho_para_ratio cannot be negative, got {self.ortho_para_ratio}.")
        if self.history_length < 2:
            raise FatalConfigError(f"history_length must be at least 2, got {self.history_length}.")
        if self.on_singular not in _SINGULAR_POLICIES:
            raise FatalConfigError(
                f"on_singular must be one of {_SINGULAR_POLICIES}, got {self.on_singular!r}."
            )
        for path_attr in ("restart", "checkpoint", "dust_file"):
            value = getattr(self, path_attr)
            if type(value) is str:
                setattr(self, path_attr, pathlib.Path(value))

    @classmethod
    def from_dict(cls, options: t.Mapping[str, t.Any]) -> "SolverConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(options) - known
        if unknown:
            raise FatalConfigError(f"Unknown solver options: {sorted(unknown)}.")
        return cls(**options)
