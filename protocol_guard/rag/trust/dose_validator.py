"""
Dose Validator

Extracts dose literals such as "epinephrine 0.3 mg IM",
"sodium bicarbonate 1 mEq/kg IV" or "5 mg of midazolam IV" and checks them
against the formulary's route- and age-appropriate ranges.

Population rules:
- pediatric context: pediatric ranges (weight-based or fixed)
- adult context: adult ranges, which are fixed doses; a per-kg dose is
  out of range for an adult
- unknown age: any range

A dose with no comparable range (no range for the medication, or units
that cannot be converted) is reported as unknown rather than wrong.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

from ..knowledge_base.formulary import Formulary, default_formulary
from ..models import DoseRange, NormalizedQuery, Population

logger = logging.getLogger(__name__)

# canonical unit -> (family, factor to family base)
UNIT_TABLE = {
    "g": ("mass", 1000.0),
    "mg": ("mass", 1.0),
    "mcg": ("mass", 0.001),
    "meq": ("meq", 1.0),
    "units": ("units", 1.0),
}

UNIT_ALIASES = {
    "g": "g", "gm": "g", "gram": "g", "grams": "g",
    "mg": "mg",
    "mcg": "mcg", "µg": "mcg", "ug": "mcg",
    "meq": "meq",
    "unit": "units", "units": "units",
}

ROUTE_ALIASES = {
    "iv": "IV", "io": "IV", "ivp": "IV", "intravenous": "IV",
    "im": "IM", "intramuscular": "IM",
    "in": "IN", "intranasal": "IN",
    "sl": "SL", "sublingual": "SL",
    "po": "PO", "oral": "PO",
    "neb": "NEB", "nebulized": "NEB",
    "odt": "ODT",
}

_UNIT_RE = r"(?P<unit>mcg|µg|ug|mg|meq|grams?|gm|g|units?)"
_ROUTE_RE = r"(?P<route>" + "|".join(sorted(ROUTE_ALIASES, key=len, reverse=True)) + r")"


@dataclass(frozen=True)
class DoseMention:
    medication: str
    amount: float
    unit: str
    per_kg: bool = False
    route: Optional[str] = None
    text: str = ""


@dataclass
class DoseCheck:
    mention: DoseMention
    known: bool
    within_range: bool
    ranges: List[DoseRange] = field(default_factory=list)

    @property
    def message(self) -> str:
        m = self.mention
        per = "/kg" if m.per_kg else ""
        dose = f"{m.medication} {m.amount:g} {m.unit}{per}" + (f" {m.route}" if m.route else "")
        if not self.known:
            return f"No reference dose range for {dose}"
        expected = ", ".join(r.describe() for r in self.ranges)
        return f"Dose {dose} is outside the expected range ({expected})"


def population_for(query: Optional[NormalizedQuery]) -> Optional[Population]:
    if query is None:
        return None
    if query.is_pediatric:
        return Population.PEDIATRIC
    if query.patient_age is not None:
        return Population.ADULT
    return None


def _convert(amount: float, unit: str, target: str) -> Optional[float]:
    source_family, source_factor = UNIT_TABLE[unit]
    target_family, target_factor = UNIT_TABLE.get(target.lower(), (None, 1.0))
    if source_family != target_family:
        return None
    return amount * source_factor / target_factor


class DoseValidator:
    """
    Dose literal extraction and range checks.

    Args:
        formulary: Medication reference; the bundled formulary by default
        max_gap: Characters allowed between a name and the amount after it
        tolerance: Fraction of each bound a dose may exceed and still pass
    """

    def __init__(self, formulary: Optional[Formulary] = None, max_gap: int = 40, tolerance: float = 0.0):
        self.formulary = formulary or default_formulary()
        self.tolerance = tolerance
        names = self.formulary.alternation
        amount = r"(?P<amount>\d+(?:\.\d+)?)\s*" + _UNIT_RE + r"\b" + r"(?P<perkg>\s*/\s*kg\b)?"
        route = r"(?:\s+" + _ROUTE_RE + r"\b)?"
        # "midazolam 5 mg IV": the gap between name and amount may not cross
        # a sentence, a number or another medication name
        self._name_first = re.compile(
            r"\b(?P<med>" + names + r")\b"
            + r"(?:(?!\b(?:" + names + r")\b)[^.;\n\d]){0," + str(max_gap) + r"}?"
            + amount + route,
            re.IGNORECASE,
        )
        # "5 mg midazolam IV", "20 mg of midazolam"
        self._amount_first = re.compile(
            r"(?<![\d.])" + amount + r"\s+(?:of\s+)?\b(?P<med>" + names + r")\b" + route,
            re.IGNORECASE,
        )

    def extract(self, text: str) -> List[DoseMention]:
        text = text or ""
        matches = list(self._amount_first.finditer(text))
        claimed = {m.start("amount") for m in matches}
        matches += [m for m in self._name_first.finditer(text) if m.start("amount") not in claimed]
        matches.sort(key=lambda m: m.start("amount"))

        mentions = []
        for m in matches:
            entry = self.formulary.entry(m.group("med"))
            if entry is None or not entry.authorized:
                continue
            route = m.group("route")
            if route and route.lower() == "in" and route != "IN":
                # plain "in" is a preposition
                route = None
            mentions.append(DoseMention(
                medication=entry.name,
                amount=float(m.group("amount")),
                unit=UNIT_ALIASES[m.group("unit").lower()],
                per_kg=bool(m.group("perkg")),
                route=ROUTE_ALIASES[route.lower()] if route else None,
                text=m.group(0),
            ))
        return mentions

    def check(self, mention: DoseMention, population: Optional[Population] = None) -> DoseCheck:
        entry = self.formulary.entry(mention.medication)
        candidates = entry.ranges_for(population, mention.route) if entry else []
        comparable = [r for r in candidates if _convert(mention.amount, mention.unit, r.unit) is not None]
        if not comparable:
            return DoseCheck(mention, known=False, within_range=True, ranges=candidates)

        for dose_range in comparable:
            if dose_range.weight_based != mention.per_kg:
                continue
            amount = _convert(mention.amount, mention.unit, dose_range.unit)
            low = dose_range.min_dose * (1 - self.tolerance) - 1e-9
            high = dose_range.max_dose * (1 + self.tolerance) + 1e-9
            if low <= amount <= high:
                return DoseCheck(mention, known=True, within_range=True, ranges=[dose_range])
        return DoseCheck(mention, known=True, within_range=False, ranges=comparable)

    def validate(self, text: str, population: Optional[Population] = None) -> List[DoseCheck]:
        return [self.check(m, population) for m in self.extract(text)]
