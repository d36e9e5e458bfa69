"""
Query Normalizer

Turns a provider's free-text encounter description into a NormalizedQuery:

1. Abbreviation and colloquial-phrase expansion (appended, never replacing
   the provider's own words)
2. Brand -> generic medication mapping through the formulary
3. Protocol code extraction ("TP 1210", "TP-1210", "Protocol 1242-P",
   bare 1000-1399 codes not followed by a unit; MCG references ignored)
4. Provider Impression matching with age branching: adult and pediatric
   codes are never mixed in one query
5. Vague-query detection

Pure and deterministic: no I/O, no clock.

Usage:
    normalizer = QueryNormalizer()
    nq = normalizer.normalize("28yo male crush injury", patient_age=28)
    nq.protocol_codes   # ['1242']
"""

import logging
import re
from typing import Dict, List, Optional

from ...core.config import ValidationConfig
from ...core.error_handling import InvalidInputError
from ..knowledge_base.formulary import Formulary, MedicationStatus, default_formulary
from ..knowledge_base.provider_impressions import ProviderImpressionTable, default_impressions
from ..models import NormalizedQuery, is_pediatric_code
from ..trust.citations import extract_protocol_codes

logger = logging.getLogger(__name__)


# ============================================================================
# TERM TABLES
# ============================================================================

ABBREVIATIONS: Dict[str, str] = {
    "sob": "shortness of breath",
    "loc": "loss of consciousness",
    "ams": "altered mental status",
    "mvc": "motor vehicle collision",
    "gcs": "glasgow coma scale",
    "cpr": "cardiac arrest",
    "vfib": "ventricular fibrillation",
    "vtach": "ventricular tachycardia",
    "stemi": "st-elevation myocardial infarction",
    "nstemi": "non-st-elevation myocardial infarction",
    "copd": "chronic obstructive pulmonary disease",
    "chf": "congestive heart failure",
    "mi": "myocardial infarction",
    "cva": "cerebrovascular accident",
    "tia": "transient ischemic attack",
    "gsw": "gunshot wound",
    "od": "overdose",
}

# colloquial / canonical phrase -> related search terms
SYNONYMS: Dict[str, List[str]] = {
    "chest pain": ["acute coronary syndrome", "nitroglycerin", "aspirin"],
    "heart attack": ["chest pain", "acute coronary syndrome", "myocardial infarction"],
    "cardiac arrest": ["epinephrine", "amiodarone", "cpr"],
    "can't breathe": ["shortness of breath", "dyspnea", "respiratory distress"],
    "shortness of breath": ["dyspnea", "respiratory distress"],
    "seizure": ["status epilepticus", "midazolam"],
    "stroke": ["stroke assessment", "cva", "base contact"],
    "gunshot wound": ["penetrating trauma", "trauma triage"],
    "motor vehicle collision": ["blunt trauma", "trauma triage"],
    "crush": ["crush injury", "crush syndrome", "hyperkalemia", "sodium bicarbonate"],
    "abdominal": ["abdominal pain", "gi emergency"],
    "gi bleed": ["hemorrhage", "shock"],
    "anaphylaxis": ["allergic reaction", "epinephrine", "diphenhydramine"],
    "allergic reaction": ["anaphylaxis", "diphenhydramine"],
    "pregnancy": ["pregnancy complication", "delivery", "eclampsia"],
    "pregnant": ["pregnancy complication", "delivery"],
    "overdose": ["poisoning", "naloxone", "activated charcoal"],
    "behavioral": ["behavioral crisis", "psychiatric", "midazolam"],
    "diabetic": ["hypoglycemia", "dextrose", "glucagon"],
    "low blood sugar": ["hypoglycemia", "dextrose", "glucagon"],
    "passed out": ["syncope", "loss of consciousness"],
    "fainted": ["syncope"],
    "choking": ["airway obstruction", "foreign body airway"],
    "pediatric": ["weight based", "pediatric dose"],
}

PEDIATRIC_KEYWORDS = (
    "pediatric", "peds", "child", "children", "infant", "newborn", "neonate", "toddler", "baby",
)

VAGUE_WORDS = {"pain", "sick", "hurt", "bad", "help", "what", "how", "feel", "unwell", "weak", "ill"}

WORD = re.compile(r"[a-z0-9']+")


def _phrase(term: str) -> re.Pattern:
    return re.compile(r"(?<![\w'])" + re.escape(term).replace(r"\ ", r"\s+") + r"(?![\w'])")


class QueryNormalizer:
    """
    Normalizes raw provider queries.

    Args:
        impressions: Provider impression table (defaults to the built-in table)
        formulary: Medication formulary (defaults to the built-in formulary)
        config: Age cutoff and vague-query thresholds
    """

    def __init__(
        self,
        impressions: Optional[ProviderImpressionTable] = None,
        formulary: Optional[Formulary] = None,
        config: Optional[ValidationConfig] = None,
    ):
        self.impressions = impressions or default_impressions()
        self.formulary = formulary or default_formulary()
        self.config = config or ValidationConfig()
        self._abbreviations = [(_phrase(a), full) for a, full in ABBREVIATIONS.items()]
        self._synonyms = [(_phrase(p), terms) for p, terms in SYNONYMS.items()]
        self._pediatric = [_phrase(k) for k in PEDIATRIC_KEYWORDS]

    @staticmethod
    def _check_age(patient_age) -> Optional[float]:
        if patient_age is None:
            return None
        if isinstance(patient_age, bool) or not isinstance(patient_age, (int, float)):
            raise InvalidInputError("patient_age must be a number", {"patient_age": patient_age})
        if patient_age < 0:
            raise InvalidInputError("patient_age cannot be negative", {"patient_age": patient_age})
        return float(patient_age)

    def normalize(self, raw_query: str, patient_age: Optional[float] = None) -> NormalizedQuery:
        if not isinstance(raw_query, str):
            raise InvalidInputError("query must be a string", {"type": type(raw_query).__name__})
        age = self._check_age(patient_age)
        cutoff = self.config.pediatric_age_cutoff

        text = re.sub(r"\s+", " ", raw_query).strip().lower()
        text = text.replace("’", "'")
        text = re.sub(r"\bcant\s+breathe?\b", "can't breathe", text)

        if not text:
            return NormalizedQuery(
                original=raw_query,
                text="",
                is_pediatric=age is not None and age < cutoff,
                patient_age=age,
                vague=True,
            )

        expansions: List[str] = []

        def expand(term: str) -> None:
            if term not in expansions and not _phrase(term).search(text):
                expansions.append(term)

        for pattern, full in self._abbreviations:
            if pattern.search(text):
                expand(full)

        synonym_hit = False
        for pattern, terms in self._synonyms:
            if pattern.search(text) or any(pattern.search(e) for e in list(expansions)):
                synonym_hit = True
                for term in terms:
                    expand(term)

        medications: List[str] = []
        for match in self.formulary.find_mentions(text):
            if match.generic not in medications:
                medications.append(match.generic)
            if match.via_alias and match.status != MedicationStatus.UNKNOWN:
                expand(match.generic)

        extracted_codes = extract_protocol_codes(text)

        if age is not None:
            pediatric = age < cutoff
        else:
            pediatric = any(p.search(text) for p in self._pediatric) or any(
                is_pediatric_code(c) for c in extracted_codes
            )

        signal_text = " ".join([text] + expansions)
        impressions = self.impressions.match(signal_text)

        protocol_codes: List[str] = []
        for code in extracted_codes:
            mapped = self.impressions.variant_for(code, pediatric)
            if mapped not in protocol_codes:
                protocol_codes.append(mapped)
        for impression in impressions:
            code = impression.pediatric_protocol_code if pediatric and impression.pediatric_protocol_code \
                else impression.protocol_code
            if code not in protocol_codes:
                protocol_codes.append(code)

        for code in protocol_codes:
            expand(code.lower())

        tokens = [w for w in WORD.findall(text) if len(w) > 2]
        has_signal = bool(synonym_hit or impressions or extracted_codes or medications)
        vague_count = sum(1 for w in tokens if w in VAGUE_WORDS)
        dominated = bool(tokens) and vague_count >= len(tokens) / 2
        vague = not has_signal and (len(tokens) <= self.config.vague_max_tokens or dominated)

        normalized = NormalizedQuery(
            original=raw_query,
            text=text,
            extracted_codes=extracted_codes,
            protocol_codes=protocol_codes,
            extracted_medications=medications,
            matched_impressions=[i.code for i in impressions],
            expansions=expansions,
            is_pediatric=pediatric,
            patient_age=age,
            vague=vague,
        )
        logger.debug(
            f"Normalized query '{text[:60]}' -> codes={protocol_codes} meds={medications} vague={vague}"
        )
        return normalized
