import numpy as np

from limoncello.blend import BlendSet, detect_blends
from limoncello.config import SolverConfig
from limoncello.driver import run_populations
from limoncello.molecule import MolecularSpecies
from limoncello.transport import GridPointScratch, RayContext, get_jbar, sample_photons

from conftest import make_chain_store, make_two_level


def _shifted(species: MolecularSpecies, name: str, fractional_shift: float) -> MolecularSpecies:
    return MolecularSpecies(
        name=name,
        weight=species.weight,
        energy=species.energy,
        g=species.g,
        upper=species.upper,
        lower=species.lower,
        a_ul=species.a_ul,
        freq=species.freq * (1.0 + fractional_shift),
        collisions=species.collisions,
    )


def _blended_pair():
    co = make_two_level()
    return [co, _shifted(co, "13CO", 1e-9)]


def _point_jbar(store, config, blends, point):
    context = RayContext.from_store(store, config, blends)
    scratch = GridPointScratch(config.max_phot, store.nline_total, store.n_species, config.n_ran_per_segment)
    sample_photons(point, config.ininphot, context, scratch, np.random.default_rng(21))
    return get_jbar(point, 0, config.ininphot, context, scratch, store, store.line_j[point], store.line_a[point])


def test_blended_partner_raises_mean_intensity():
    config = SolverConfig(ininphot=300, max_phot=300, blend=True)
    store = make_chain_store(3, 1e12, 1e9, 1e-8, n_species=2)
    store.attach_species(_blended_pair(), config)
    store.set_lte()
    store.refresh_line_caches()

    blends = detect_blends(store.species, config.blend_threshold)
    assert blends.n_pairs == 2

    plain = _point_jbar(store, config, BlendSet.empty(store.nline_total), 2)
    blended = _point_jbar(store, config, blends, 2)
    assert plain is not None and blended is not None
    assert np.all(np.isfinite(blended))
    assert blended[0] > plain[0]


def test_blended_run_gives_normalised_populations():
    store = make_chain_store(3, 1e12, 1e9, 1e-8, n_species=2)
    config = SolverConfig(ininphot=50, max_phot=200, tol=1e-3, goal=2, max_iter=3, blend=True)
    report = run_populations(store, _blended_pair(), config)
    assert report.n_errored == 0
    for pops in store.pops:
        assert np.all(np.isfinite(pops))
        np.testing.assert_allclose(pops.sum(axis=1), 1.0, atol=1e-9)
