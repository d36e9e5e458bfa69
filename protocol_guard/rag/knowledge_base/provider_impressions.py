"""
Provider Impressions

Clinical impression codes that bridge a provider's symptom language to a
treatment protocol. Impressions with a pediatric variant branch on patient
age; the rest always map to the adult protocol.

Usage:
    table = default_impressions()
    for impression in table.match("28yo male crush injury"):
        print(impression.code, impression.code_for_age(28))   # CRSH 1242
"""

import logging
import re
from typing import Dict, Iterable, List, Optional, Pattern, Set, Tuple

from ..models import ProviderImpression, base_code

logger = logging.getLogger(__name__)


def _pi(code, name, protocol, pediatric=None, keywords=(), symptoms=()) -> ProviderImpression:
    return ProviderImpression(code, name, protocol, pediatric, tuple(keywords), tuple(symptoms))


DEFAULT_IMPRESSIONS: List[ProviderImpression] = [
    _pi("CPSC", "Chest Pain - Suspected Cardiac", "1211",
        keywords=["chest pain", "cardiac chest pain", "acs", "acute coronary syndrome", "angina", "stemi"],
        symptoms=["myocardial infarction", "crushing chest pressure"]),
    _pi("CANT", "Cardiac Arrest - Non-Traumatic", "1210", "1210-P",
        keywords=["cardiac arrest", "pulseless", "asystole", "ventricular fibrillation", "vfib"],
        symptoms=["not breathing", "no pulse", "unresponsive and pulseless"]),
    _pi("SOBB", "Respiratory Distress / Bronchospasm", "1237", "1237-P",
        keywords=["respiratory distress", "shortness of breath", "dyspnea", "bronchospasm",
                  "asthma", "copd"],
        symptoms=["wheezing", "can't breathe", "difficulty breathing"]),
    _pi("SEIZ", "Seizure - Active", "1231", "1231-P",
        keywords=["seizure", "status epilepticus", "convulsion"],
        symptoms=["seizing", "postictal", "tonic clonic"]),
    _pi("STRK", "Stroke / CVA / TIA", "1232",
        keywords=["stroke", "cva", "cerebrovascular accident", "tia", "transient ischemic attack"],
        symptoms=["facial droop", "slurred speech", "unilateral weakness"]),
    _pi("TRAU", "Traumatic Injury", "1244", "1244-P",
        keywords=["traumatic injury", "penetrating trauma", "blunt trauma", "gunshot wound",
                  "stab wound", "motor vehicle collision"],
        symptoms=["fall from height"]),
    _pi("CRSH", "Crush Injury / Syndrome", "1242", "1242-P",
        keywords=["crush injury", "crush syndrome", "crush", "entrapment"],
        symptoms=["pinned under"]),
    _pi("ABOP", "Abdominal Pain / Problems", "1205",
        keywords=["abdominal pain", "abdominal", "gi emergency"],
        symptoms=["vomiting", "nausea"]),
    _pi("GIBL", "GI / GU Hemorrhage", "1207",
        keywords=["gi bleed", "gastrointestinal bleeding", "hematemesis", "melena"],
        symptoms=["vomiting blood", "black tarry stool"]),
    _pi("ANPH", "Allergic Reaction - Anaphylaxis", "1219", "1219-P",
        keywords=["anaphylaxis", "anaphylactic", "allergic reaction"],
        symptoms=["hives", "throat swelling", "bee sting"]),
    _pi("OBPR", "Pregnancy Complication", "1217",
        keywords=["pregnancy complication", "pregnant", "pregnancy", "eclampsia", "labor"],
        symptoms=["vaginal bleeding in pregnancy"]),
    _pi("ODPO", "Overdose / Poisoning / Ingestion", "1241", "1241-P",
        keywords=["overdose", "poisoning", "ingestion", "opioid overdose"],
        symptoms=["pinpoint pupils"]),
    _pi("BEHV", "Behavioral / Psychiatric Crisis", "1209",
        keywords=["behavioral crisis", "behavioral", "psychiatric", "agitated delirium"],
        symptoms=["combative", "suicidal"]),
    _pi("DIAB", "Diabetic Emergency / Hypoglycemia", "1203", "1203-P",
        keywords=["hypoglycemia", "diabetic emergency", "diabetic", "low blood sugar"],
        symptoms=["low glucose"]),
    _pi("SYNC", "Syncope / Near Syncope", "1233",
        keywords=["syncope", "near syncope", "passed out", "fainted"]),
    _pi("ALOC", "Altered Level of Consciousness", "1229",
        keywords=["altered mental status", "altered level of consciousness", "loss of consciousness"],
        symptoms=["confused", "lethargic"]),
    _pi("CHFP", "Congestive Heart Failure / Pulmonary Edema", "1214",
        keywords=["congestive heart failure", "pulmonary edema", "chf"],
        symptoms=["rales", "crackles"]),
    _pi("AIRO", "Airway Obstruction", "1234",
        keywords=["airway obstruction", "choking", "foreign body airway"],
        symptoms=["stridor"]),
]


def _phrase_pattern(phrase: str) -> Pattern:
    return re.compile(r"\b" + re.escape(phrase.lower()).replace(r"\ ", r"\s+") + r"\b")


class ProviderImpressionTable:
    """Keyword lookup over provider impressions."""

    def __init__(self, impressions: Iterable[ProviderImpression]):
        self._impressions: List[ProviderImpression] = list(impressions)
        self._by_code: Dict[str, ProviderImpression] = {i.code: i for i in self._impressions}
        self._phrases: List[Tuple[Pattern, ProviderImpression]] = []
        for impression in self._impressions:
            for phrase in (impression.name,) + impression.keywords + impression.symptoms:
                self._phrases.append((_phrase_pattern(phrase), impression))

        # family -> (adult, pediatric)
        self._families: Dict[str, Tuple[str, Optional[str]]] = {}
        for impression in self._impressions:
            self._families[base_code(impression.protocol_code)] = (
                impression.protocol_code,
                impression.pediatric_protocol_code,
            )

    def __len__(self) -> int:
        return len(self._impressions)

    def __iter__(self):
        return iter(self._impressions)

    def get(self, code: str) -> Optional[ProviderImpression]:
        return self._by_code.get(code.upper())

    def match(self, text: str) -> List[ProviderImpression]:
        """Impressions whose name, keyword or symptom appears in text, table order."""
        lowered = (text or "").lower()
        matched: List[ProviderImpression] = []
        for pattern, impression in self._phrases:
            if impression in matched:
                continue
            if pattern.search(lowered):
                matched.append(impression)
        return matched

    def variant_for(self, code: str, pediatric: bool) -> str:
        """Map a protocol code into the adult or pediatric member of its family."""
        code = code.upper()
        family = self._families.get(base_code(code))
        if family is None:
            return code
        adult, peds = family
        if pediatric:
            return peds or code
        return adult

    def known_codes(self) -> Set[str]:
        codes: Set[str] = set()
        for impression in self._impressions:
            codes.add(impression.protocol_code)
            if impression.pediatric_protocol_code:
                codes.add(impression.pediatric_protocol_code)
        return codes


def default_impressions() -> ProviderImpressionTable:
    return ProviderImpressionTable(DEFAULT_IMPRESSIONS)
