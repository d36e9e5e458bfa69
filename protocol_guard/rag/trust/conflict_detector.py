"""
Conflict Detection

Two kinds of conflict:

1. Protocol conflicts - adult and pediatric variants of the same protocol
   retrieved together for one patient.
2. Sentence contradictions - one sentence directs giving a medication and
   another says not to; two "only" route directives for the same medication
   disagree, or an "only" route is also forbidden; one sentence requires
   base hospital contact and another says it is not needed.

Conditional sentences ("do not give nitroglycerin if ...") are treated as
criteria, not as a blanket prohibition.
"""

import re
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set

from ..knowledge_base.formulary import Formulary, MedicationStatus, default_formulary
from ..models import Protocol
from .dose_validator import ROUTE_ALIASES

SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+|\n+")
NEGATION = re.compile(
    r"\b(?:do\s+not|don't|never|avoid|withhold|contraindicated|must\s+not|should\s+not)\b",
    re.IGNORECASE,
)
CONDITIONAL = re.compile(r"\b(?:if|unless|when|while|in\s+patients?\s+with|for\s+patients?\s+with)\b", re.IGNORECASE)
DIRECTIVE = re.compile(r"\b(?:give|administer|push|start|repeat|begin|use)\b", re.IGNORECASE)

# "in" is left out: as a word it is almost always the preposition
ROUTE_WORDS = sorted((r for r in ROUTE_ALIASES if r != "in"), key=len, reverse=True)
_ROUTE = r"(?P<route>" + "|".join(ROUTE_WORDS) + r")"
ONLY_ROUTE = re.compile(r"\b(?:only\s+(?:by\s+|via\s+)?" + _ROUTE + r"|" + _ROUTE.replace("route", "route2") + r"\s+only)\b", re.IGNORECASE)
NEVER_ROUTE = re.compile(r"\b(?:never|not|no)\s+(?:give\s+|administer\s+)?(?:\w+\s+){0,3}?(?:by\s+|via\s+)?" + _ROUTE + r"\b", re.IGNORECASE)

BASE_REQUIRED = re.compile(r"\b(?:contact|call|consult)\s+(?:the\s+)?base(?:\s+hospital)?\b|\bbase(?:\s+hospital)?\s+contact\s+(?:is\s+)?required\b", re.IGNORECASE)
BASE_NOT_REQUIRED = re.compile(
    r"\b(?:do\s+not|don't|no\s+need\s+to)\s+(?:contact|call)\s+(?:the\s+)?base\b"
    r"|\bbase(?:\s+hospital)?\s+contact\s+(?:is\s+)?not\s+(?:required|needed)\b"
    r"|\bno\s+base(?:\s+hospital)?\s+contact\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class Contradiction:
    kind: str
    subject: str
    first: str
    second: str

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "subject": self.subject, "first": self.first, "second": self.second}


def split_sentences(text: str) -> List[str]:
    return [s.strip() for s in SENTENCE_SPLIT.split(text or "") if s.strip()]


def _route_of(match: re.Match) -> str:
    groups = match.groupdict()
    route = groups.get("route") or groups.get("route2")
    return ROUTE_ALIASES[route.lower()]


class ConflictDetector:
    """Protocol-set conflicts and answer-level contradictions."""

    def __init__(self, formulary: Optional[Formulary] = None):
        self.formulary = formulary or default_formulary()

    @staticmethod
    def protocol_conflicts(protocols: Iterable[Protocol]) -> List[str]:
        families: Dict[str, Set[str]] = defaultdict(set)
        for protocol in protocols:
            families[protocol.family].add(protocol.code)

        conflicts = []
        for family in sorted(families):
            codes = families[family]
            if any(c.endswith("-P") for c in codes) and any(not c.endswith("-P") for c in codes):
                conflicts.append(
                    f"Adult and pediatric variants retrieved together: {', '.join(sorted(codes))}"
                )
        return conflicts

    def _medications(self, sentence: str) -> List[str]:
        return [
            m.generic for m in self.formulary.find_mentions(sentence)
            if m.status != MedicationStatus.UNKNOWN
        ]

    def contradictions(self, text: str) -> List[Contradiction]:
        sentences = split_sentences(text)
        given: Dict[str, str] = {}
        withheld: Dict[str, str] = {}
        only_routes: Dict[str, Dict[str, str]] = defaultdict(dict)
        never_routes: Dict[str, Dict[str, str]] = defaultdict(dict)
        base_required: Optional[str] = None
        base_not_required: Optional[str] = None

        for sentence in sentences:
            meds = self._medications(sentence)
            conditional = bool(CONDITIONAL.search(sentence))
            negated = bool(NEGATION.search(sentence))

            for med in meds:
                if negated and not conditional:
                    withheld.setdefault(med, sentence)
                elif not negated and DIRECTIVE.search(sentence):
                    given.setdefault(med, sentence)

                for m in ONLY_ROUTE.finditer(sentence):
                    only_routes[med].setdefault(_route_of(m), sentence)
                if not conditional:
                    for m in NEVER_ROUTE.finditer(sentence):
                        never_routes[med].setdefault(_route_of(m), sentence)

            if BASE_NOT_REQUIRED.search(sentence):
                base_not_required = base_not_required or sentence
            elif BASE_REQUIRED.search(sentence) and not conditional:
                base_required = base_required or sentence

        found: List[Contradiction] = []
        for med in sorted(set(given) & set(withheld)):
            found.append(Contradiction("give-vs-avoid", med, given[med], withheld[med]))

        for med in sorted(only_routes):
            routes = only_routes[med]
            if len(routes) > 1:
                first, second = sorted(routes)[:2]
                found.append(Contradiction("route-only", med, routes[first], routes[second]))
            for route, sentence in routes.items():
                if route in never_routes.get(med, {}) and never_routes[med][route] != sentence:
                    found.append(Contradiction("route-only-vs-never", med, sentence, never_routes[med][route]))

        if base_required and base_not_required:
            found.append(Contradiction("base-contact", "base hospital", base_required, base_not_required))
        return found
