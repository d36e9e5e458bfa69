"""
Medication Formulary

Authorized prehospital medications with routes and dose ranges, banned
medications with their preferred substitute, and brand -> generic aliases.

Dose ranges (adult fixed, pediatric weight-based) are tuning data, not
invariants: build a Formulary from different entries to change them.

Usage:
    formulary = default_formulary()
    status = formulary.classify("Ativan")   # MedicationStatus.UNAUTHORIZED
    entry = formulary.entry("versed")        # midazolam entry
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Pattern

from ..models import DoseRange, FormularyEntry, Population

logger = logging.getLogger(__name__)

ADULT = Population.ADULT
PEDS = Population.PEDIATRIC


class MedicationStatus(str, Enum):
    AUTHORIZED = "authorized"
    BRAND_NAME = "brand-name"          # brand of an authorized generic
    UNAUTHORIZED = "unauthorized"      # banned generic, or brand of one
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class MedicationMatch:
    """A medication mention resolved against the formulary."""

    term: str
    generic: str
    status: MedicationStatus
    substitute: Optional[str] = None

    @property
    def via_alias(self) -> bool:
        return self.term != self.generic


def _r(route, lo, hi, unit, population=ADULT, weight_based=False) -> DoseRange:
    return DoseRange(route, lo, hi, unit, population, weight_based)


# ============================================================================
# DEFAULT TABLES
# ============================================================================

AUTHORIZED_ENTRIES: List[FormularyEntry] = [
    FormularyEntry("epinephrine", aliases=["epipen", "adrenalin", "adrenaline", "epi"],
                   routes=["IV", "IM", "NEB"],
                   dose_ranges=[_r("IV", 0.01, 1, "mg"), _r("IM", 0.3, 0.5, "mg"),
                                _r("IV", 0.01, 0.3, "mg", PEDS, True),
                                _r("IM", 0.01, 0.3, "mg", PEDS, True)]),
    FormularyEntry("norepinephrine", aliases=["levophed"], routes=["IV"]),
    FormularyEntry("nitroglycerin", aliases=["ntg", "nitrostat"], routes=["SL"],
                   dose_ranges=[_r("SL", 0.3, 0.4, "mg")]),
    FormularyEntry("aspirin", aliases=["asa"], routes=["PO"],
                   dose_ranges=[_r("PO", 162, 325, "mg")]),
    FormularyEntry("atropine", routes=["IV"],
                   dose_ranges=[_r("IV", 0.5, 3, "mg"),
                                _r("IV", 0.02, 1, "mg", PEDS, True)]),
    FormularyEntry("adenosine", aliases=["adenocard"], routes=["IV"],
                   dose_ranges=[_r("IV", 6, 12, "mg"),
                                _r("IV", 0.1, 0.3, "mg", PEDS, True)]),
    FormularyEntry("amiodarone", aliases=["cordarone"], routes=["IV"],
                   dose_ranges=[_r("IV", 150, 300, "mg"),
                                _r("IV", 5, 5, "mg", PEDS, True)]),
    FormularyEntry("lidocaine", routes=["IV"]),
    FormularyEntry("dopamine", routes=["IV"]),
    FormularyEntry("albuterol", aliases=["proventil", "ventolin"], routes=["NEB"],
                   dose_ranges=[_r("NEB", 2.5, 5, "mg"), _r("NEB", 2.5, 5, "mg", PEDS)]),
    FormularyEntry("midazolam", aliases=["versed"], routes=["IV", "IM", "IN"],
                   dose_ranges=[_r("IV", 2, 5, "mg"), _r("IM", 5, 10, "mg"), _r("IN", 5, 10, "mg"),
                                _r("IV", 0.05, 0.2, "mg", PEDS, True),
                                _r("IM", 0.1, 0.2, "mg", PEDS, True),
                                _r("IN", 0.2, 0.3, "mg", PEDS, True)]),
    FormularyEntry("fentanyl", aliases=["sublimaze"], routes=["IV", "IM", "IN"],
                   dose_ranges=[_r("IV", 25, 100, "mcg"), _r("IM", 25, 100, "mcg"),
                                _r("IN", 25, 100, "mcg"),
                                _r("IV", 1, 2, "mcg", PEDS, True),
                                _r("IN", 1, 2, "mcg", PEDS, True)]),
    FormularyEntry("morphine", routes=["IV", "IM"],
                   dose_ranges=[_r("IV", 2, 10, "mg"), _r("IM", 2, 10, "mg"),
                                _r("IV", 0.05, 0.1, "mg", PEDS, True)]),
    FormularyEntry("ketorolac", aliases=["toradol"], routes=["IV", "IM"],
                   dose_ranges=[_r("IV", 15, 30, "mg"), _r("IM", 30, 60, "mg")]),
    FormularyEntry("acetaminophen", aliases=["tylenol", "ofirmev"], routes=["IV", "PO"],
                   dose_ranges=[_r("IV", 650, 1000, "mg"), _r("PO", 650, 1000, "mg"),
                                _r("IV", 15, 15, "mg", PEDS, True)]),
    FormularyEntry("ondansetron", aliases=["zofran"], routes=["IV", "IM", "ODT"],
                   dose_ranges=[_r("IV", 4, 8, "mg"), _r("IM", 4, 8, "mg"), _r("ODT", 4, 8, "mg"),
                                _r("IV", 0.1, 0.15, "mg", PEDS, True)]),
    FormularyEntry("diphenhydramine", aliases=["benadryl"], routes=["IV", "IM"],
                   dose_ranges=[_r("IV", 25, 50, "mg"), _r("IM", 25, 50, "mg"),
                                _r("IV", 1, 1, "mg", PEDS, True), _r("IM", 1, 1, "mg", PEDS, True)]),
    FormularyEntry("naloxone", aliases=["narcan"], routes=["IV", "IM", "IN"],
                   dose_ranges=[_r("IV", 0.4, 2, "mg"), _r("IM", 0.4, 2, "mg"), _r("IN", 2, 4, "mg"),
                                _r("IV", 0.1, 2, "mg", PEDS, True)]),
    FormularyEntry("glucagon", routes=["IM"],
                   dose_ranges=[_r("IM", 0.5, 1, "mg"), _r("IM", 0.5, 1, "mg", PEDS)]),
    FormularyEntry("calcium chloride", routes=["IV"],
                   dose_ranges=[_r("IV", 500, 1000, "mg"),
                                _r("IV", 20, 20, "mg", PEDS, True)]),
    FormularyEntry("calcium gluconate", routes=["IV"],
                   dose_ranges=[_r("IV", 1, 3, "g")]),
    FormularyEntry("dextrose", aliases=["d50", "d10"], routes=["IV"],
                   dose_ranges=[_r("IV", 12.5, 25, "g"),
                                _r("IV", 0.5, 1, "g", PEDS, True)]),
    FormularyEntry("sodium bicarbonate", aliases=["bicarb"], routes=["IV"],
                   dose_ranges=[_r("IV", 50, 100, "meq"),
                                _r("IV", 1, 1, "meq", PEDS, True)]),
    FormularyEntry("magnesium sulfate", routes=["IV"],
                   dose_ranges=[_r("IV", 2, 4, "g"),
                                _r("IV", 25, 50, "mg", PEDS, True)]),
    FormularyEntry("oxytocin", aliases=["pitocin"], routes=["IV", "IM"],
                   dose_ranges=[_r("IM", 10, 10, "units"), _r("IV", 10, 20, "units")]),
    FormularyEntry("activated charcoal", routes=["PO"],
                   dose_ranges=[_r("PO", 25, 50, "g"), _r("PO", 1, 1, "g", PEDS, True)]),
    FormularyEntry("tranexamic acid", aliases=["txa"], routes=["IV"],
                   dose_ranges=[_r("IV", 1, 2, "g")]),
]

UNAUTHORIZED_ENTRIES: List[FormularyEntry] = [
    FormularyEntry("lorazepam", authorized=False, aliases=["ativan"], substitute="midazolam"),
    FormularyEntry("diazepam", authorized=False, aliases=["valium"], substitute="midazolam"),
    FormularyEntry("alprazolam", authorized=False, aliases=["xanax"], substitute="midazolam"),
    FormularyEntry("clonazepam", authorized=False, aliases=["klonopin"], substitute="midazolam"),
    FormularyEntry("haloperidol", authorized=False, aliases=["haldol"], substitute="midazolam"),
    FormularyEntry("ketamine", authorized=False),
    FormularyEntry("etomidate", authorized=False),
    FormularyEntry("succinylcholine", authorized=False),
    FormularyEntry("rocuronium", authorized=False),
    FormularyEntry("vecuronium", authorized=False),
    FormularyEntry("propofol", authorized=False),
]

# Capitalized words with drug-like suffixes that are not drugs.
NON_DRUG_WORDS = {
    "medicine", "routine", "baseline", "guideline", "guidelines", "decline", "determine",
    "examine", "provide", "override", "define", "combine", "machine", "online", "saline",
    "outside", "inside", "beside", "alongside", "discipline", "pipeline", "timeline",
    "deadline", "outline", "underline", "airline", "headline", "hotline", "genuine",
    "quarantine", "magazine", "doctrine", "feminine",
    "masculine", "engine", "imagine", "decide", "divide", "guide",
    "slide", "wide", "ride", "side", "hide", "pride", "tide", "oxide", "bedside",
    "roadside", "worldwide", "nationwide", "statewide", "countywide", "chloride",
}

UNRECOGNIZED_DRUG_PATTERN = re.compile(r"\b([A-Z][a-z]{3,}(?:ine|lam|ide|xone|olol|pril|azepam))\b")


# ============================================================================
# FORMULARY
# ============================================================================


class Formulary:
    """Read-only lookup over medication entries and aliases."""

    def __init__(self, entries: Iterable[FormularyEntry]):
        self._entries: Dict[str, FormularyEntry] = {}
        self._aliases: Dict[str, str] = {}
        for entry in entries:
            name = entry.name.lower()
            self._entries[name] = entry
            for alias in entry.aliases:
                self._aliases[alias.lower()] = name

        terms = sorted(set(self._entries) | set(self._aliases), key=lambda t: (-len(t), t))
        self._alternation = "|".join(re.escape(t).replace(r"\ ", r"\s+") for t in terms)
        self._pattern: Pattern = re.compile(r"\b(" + self._alternation + r")\b", re.IGNORECASE)
        logger.debug(f"Formulary loaded: {len(self._entries)} medications, {len(self._aliases)} aliases")

    @property
    def pattern(self) -> Pattern:
        return self._pattern

    @property
    def alternation(self) -> str:
        """Regex alternation of every name and alias, longest first."""
        return self._alternation

    def generic_name(self, name: str) -> str:
        key = re.sub(r"\s+", " ", name.strip().lower())
        return self._aliases.get(key, key)

    def entry(self, name: str) -> Optional[FormularyEntry]:
        return self._entries.get(self.generic_name(name))

    def authorized_names(self) -> List[str]:
        return sorted(n for n, e in self._entries.items() if e.authorized)

    def unauthorized_names(self) -> List[str]:
        return sorted(n for n, e in self._entries.items() if not e.authorized)

    def is_authorized(self, name: str) -> bool:
        entry = self.entry(name)
        return entry is not None and entry.authorized

    def classify(self, name: str) -> MedicationMatch:
        term = re.sub(r"\s+", " ", name.strip().lower())
        generic = self.generic_name(term)
        entry = self._entries.get(generic)
        if entry is None:
            return MedicationMatch(term, generic, MedicationStatus.UNKNOWN)
        if not entry.authorized:
            return MedicationMatch(term, generic, MedicationStatus.UNAUTHORIZED, entry.substitute)
        if term != generic:
            return MedicationMatch(term, generic, MedicationStatus.BRAND_NAME, generic)
        return MedicationMatch(term, generic, MedicationStatus.AUTHORIZED)

    def find_mentions(self, text: str) -> List[MedicationMatch]:
        """Every formulary medication (or alias) named in text, first-seen order, de-duplicated."""
        seen = set()
        matches = []
        for m in self._pattern.finditer(text or ""):
            match = self.classify(m.group(1))
            if match.term in seen:
                continue
            seen.add(match.term)
            matches.append(match)
        return matches

    def find_unrecognized(self, text: str) -> List[str]:
        """Capitalized drug-like words that are not in the formulary."""
        found = []
        for m in UNRECOGNIZED_DRUG_PATTERN.finditer(text or ""):
            word = m.group(1).lower()
            if word in NON_DRUG_WORDS or word in self._entries or word in self._aliases:
                continue
            if len(word) > 6 and word not in found:
                found.append(word)
        return found


def default_formulary() -> Formulary:
    return Formulary(AUTHORIZED_ENTRIES + UNAUTHORIZED_ENTRIES)
