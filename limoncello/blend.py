import typing as t
from dataclasses import dataclass

import numpy as np
import numpy.typing as npt

from .config import _BLENDMASK, log
from .molecule import MolecularSpecies
from .nlte import const_c


@dataclass(frozen=True)
class BlendSet:
    """
    Overlapping line pairs, in compressed sparse row form over the global line index (all species' lines
    concatenated in species order). The partners of line ``i`` are ``partner[ptr[i]:ptr[i + 1]]`` with velocity
    separations ``deltav[ptr[i]:ptr[i + 1]]``.
    """
    ptr: npt.NDArray[np.int64]
    partner: npt.NDArray[np.int64]
    deltav: npt.NDArray[np.float64]

    @classmethod
    def empty(cls, n_lines: int) -> "BlendSet":
        return cls(
            ptr=np.zeros(n_lines + 1, dtype=np.int64),
            partner=np.zeros(0, dtype=np.int64),
            deltav=np.zeros(0),
        )

    @property
    def n_pairs(self) -> int:
        return self.partner.shape[0]

    def pairs(self) -> t.List[t.Tuple[int, int, float]]:
        out = []
        for line in range(self.ptr.shape[0] - 1):
            for k in range(self.ptr[line], self.ptr[line + 1]):
                out.append((line, int(self.partner[k]), float(self.deltav[k])))
        return out


def blend_velocity(freq_i: float, freq_j: float) -> float:
    """Velocity separation [m/s] of line ``j`` from line ``i``, relative to their mean frequency."""
    return const_c * (freq_j - freq_i) / (0.5 * (freq_i + freq_j))


def is_blended(freq_i: float, freq_j: float, threshold: float = _BLENDMASK) -> bool:
    return abs(blend_velocity(freq_i, freq_j)) < threshold


def detect_blends(species: t.Sequence[MolecularSpecies], threshold: float = _BLENDMASK) -> BlendSet:
    """
    Finds every ordered pair of distinct lines, within and across species, closer than ``threshold`` [m/s].

    :param species: The tracked species, in global line order.
    :param threshold: Blend threshold [m/s]; a pair exactly at the threshold is not blended.
    :return: The blend set.
    """
    freq = np.concatenate([sp.freq for sp in species]) if species else np.zeros(0)
    n_lines = freq.shape[0]
    if n_lines < 2:
        return BlendSet.empty(n_lines)

    deltav = const_c * (freq[None, :] - freq[:, None]) / (0.5 * (freq[:, None] + freq[None, :]))
    mask = np.abs(deltav) < threshold
    np.fill_diagonal(mask, False)

    rows, cols = np.nonzero(mask)
    ptr = np.zeros(n_lines + 1, dtype=np.int64)
    np.cumsum(np.bincount(rows, minlength=n_lines), out=ptr[1:])
    blends = BlendSet(ptr=ptr, partner=cols.astype(np.int64), deltav=deltav[rows, cols])
    if blends.n_pairs > 0:
        log.info(f"Found {blends.n_pairs // 2} blended line pairs (threshold {threshold:.3g} m/s).")
    return blends
