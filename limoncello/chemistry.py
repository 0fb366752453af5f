import re
import typing as t

import numpy as np
import numpy.typing as npt
from molmass import Formula, FormulaError

from .errors import FatalConfigError

SpeciesIdentType = t.Union[str, "SpeciesFormula"]

# LAMDA collision partner codes.
PARTNER_NAMES: t.Dict[int, str] = {
    1: "H2",
    2: "p-H2",
    3: "o-H2",
    4: "e",
    5: "H",
    6: "He",
    7: "H+",
}
PARTNER_CODES: t.Dict[str, int] = {name.upper(): code for code, name in PARTNER_NAMES.items()}

_SPIN_PREFIX = re.compile(r"^(o|p|ortho|para)[-_]", re.IGNORECASE)


class SpeciesFormula(Formula):
    """Represents a particular species. Spin isomer prefixes (``o-``, ``p-``) are ignored for the formula."""

    def __init__(self, formula: SpeciesIdentType, *args, **kwargs):
        if isinstance(formula, SpeciesFormula):
            formula = formula.label
        self.label = str(formula).strip()
        stripped = _SPIN_PREFIX.sub("", self.label)

        super().__init__(stripped, *args, **kwargs)

    def __str__(self) -> str:
        return self.label


def species_mass(name: str) -> float:
    """Average molecular mass in amu from the species name.

    Args:
        name: Species name, optionally with a spin isomer prefix.

    Returns:
        float: The molecular mass.
    """
    try:
        return float(SpeciesFormula(name).mass)
    except FormulaError as e:
        raise FatalConfigError(f"Cannot derive a molecular weight from species name {name!r}: {e}") from e


def partner_code(name: str) -> int:
    """LAMDA partner code for a partner name such as ``"p-H2"`` or ``"e"``."""
    key = name.strip().upper()
    if key not in PARTNER_CODES:
        raise FatalConfigError(f"Unknown collision partner {name!r}; expected one of {list(PARTNER_NAMES.values())}.")
    return PARTNER_CODES[key]


def build_partner_weights(
        partner_codes: t.Sequence[int],
        n_density_columns: int,
        collision_partners: t.Optional[t.Dict[int, int]] = None,
        ortho_para_ratio: float = 3.0,
) -> npt.NDArray[np.float64]:
    """
    Builds the matrix mapping a point's density vector onto the densities of a species' collision partners.

    The partner densities of a point are ``weights @ density``. When ``collision_partners`` is not given, density
    column ``p`` belongs to the ``p``-th partner of the species. Missing ortho/para H2 densities are derived from total
    H2 with the ortho-to-para ratio and vice versa.

    Args:
        partner_codes: LAMDA codes of the species' collision partners, in table order.
        n_density_columns: Number of density columns supplied by the grid.
        collision_partners: Mapping from LAMDA partner code to density column.
        ortho_para_ratio: Ortho-to-para H2 ratio used to split total H2.

    Returns:
        npt.NDArray[np.float64]: Weights of shape ``(n_partners, n_density_columns)``.
    """
    if collision_partners is None and n_density_columns == 1 and set(partner_codes) & {1, 2, 3}:
        # A single density column is total H2.
        collision_partners = {1: 0}
    elif collision_partners is None:
        collision_partners = {
            code: column for column, code in enumerate(partner_codes) if column < n_density_columns
        }
    for code, column in collision_partners.items():
        if not 0 <= column < n_density_columns:
            raise FatalConfigError(
                f"Collision partner {PARTNER_NAMES.get(code, code)} mapped to density column {column}, "
                f"but only {n_density_columns} columns are available."
            )

    para_fraction = 1.0 / (1.0 + ortho_para_ratio)
    ortho_fraction = ortho_para_ratio / (1.0 + ortho_para_ratio)

    weights = np.zeros((len(partner_codes), n_density_columns))
    for p, code in enumerate(partner_codes):
        if code in collision_partners:
            weights[p, collision_partners[code]] = 1.0
        elif code == 2 and 1 in collision_partners:
            weights[p, collision_partners[1]] = para_fraction
        elif code == 3 and 1 in collision_partners:
            weights[p, collision_partners[1]] = ortho_fraction
        elif code == 1 and 2 in collision_partners and 3 in collision_partners:
            weights[p, collision_partners[2]] = 1.0
            weights[p, collision_partners[3]] = 1.0
    return weights
