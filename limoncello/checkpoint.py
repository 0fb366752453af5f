import pathlib
import pickle
import typing as t

import numpy as np

from .config import log
from .errors import FatalConfigError, PointStatus
from .grid import GridPointStore


def write_checkpoint(store: GridPointStore, filename: t.Union[str, pathlib.Path]) -> pathlib.Path:
    """Dumps the per-point populations of every species and the point status."""
    if type(filename) is str:
        filename = pathlib.Path(filename)
    filename.parent.mkdir(parents=True, exist_ok=True)
    content = {
        "species": [sp.name for sp in store.species],
        "nlev": [sp.nlev for sp in store.species],
        "pops": [pops.copy() for pops in store.pops],
        "status": store.status.copy(),
    }
    with open(filename.resolve(), "wb") as pickle_file:
        pickle.dump(content, pickle_file, protocol=pickle.HIGHEST_PROTOCOL)
    log.info(f"Wrote populations of {store.n_points} points to {filename}.")
    return filename


def read_checkpoint(store: GridPointStore, filename: t.Union[str, pathlib.Path]) -> None:
    """
    Loads populations and point statuses into a store with species attached.

    Points marked converged keep that status; any other non-sink point is iterated again.

    :raises FatalConfigError: When the file is missing or was written for a different grid or species set.
    """
    if type(filename) is str:
        filename = pathlib.Path(filename)
    if not filename.exists():
        raise FatalConfigError(f"Checkpoint not found ({filename}).")
    with open(filename.resolve(), "rb") as pickle_file:
        content = pickle.load(pickle_file)

    names = [sp.name for sp in store.species]
    if content.get("species") != names:
        raise FatalConfigError(f"Checkpoint holds species {content.get('species')}, expected {names}.")
    for sp, pops in zip(store.species, content["pops"]):
        if pops.shape != (store.n_points, sp.nlev):
            raise FatalConfigError(
                f"Checkpoint populations of {sp.name} have shape {pops.shape}, "
                f"expected {(store.n_points, sp.nlev)}."
            )
    status = np.asarray(content["status"], dtype=np.int8)
    if status.shape != (store.n_points,) or not np.array_equal(status == PointStatus.SINK, store.sink):
        raise FatalConfigError("Checkpoint was written for a grid with different points or sinks.")

    for s, pops in enumerate(content["pops"]):
        store.pops[s][:] = pops
    store.status[:] = np.where(status == PointStatus.CONVERGED, PointStatus.CONVERGED, store.status)
    log.info(f"Restarted from {filename}: {int((status == PointStatus.CONVERGED).sum())} points already converged.")
