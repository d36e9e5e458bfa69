"""
Medication Validator

Checks every medication named in a piece of text against the formulary:

- authorized generic            -> ok
- brand of an authorized generic -> warning (use the generic name)
- banned generic, or its brand  -> error (with the preferred substitute)
- capitalized drug-like word not in the formulary -> warning

Usage:
    check = MedicationValidator().validate("Give Ativan for seizure")
    check.valid          # False
    check.errors[0]      # "lorazepam (Ativan) is not authorized - use midazolam"
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from ..knowledge_base.formulary import Formulary, MedicationMatch, MedicationStatus, default_formulary

logger = logging.getLogger(__name__)


@dataclass
class MedicationCheck:
    authorized: List[MedicationMatch] = field(default_factory=list)
    brand_names: List[MedicationMatch] = field(default_factory=list)
    unauthorized: List[MedicationMatch] = field(default_factory=list)
    unrecognized: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.unauthorized

    @property
    def medications(self) -> List[str]:
        names = []
        for match in self.authorized + self.brand_names + self.unauthorized:
            if match.generic not in names:
                names.append(match.generic)
        return names

    @property
    def errors(self) -> List[str]:
        messages = []
        for match in self.unauthorized:
            label = f"{match.generic} ({match.term.title()})" if match.via_alias else match.generic
            if match.substitute:
                messages.append(f"{label} is not authorized - use {match.substitute}")
            else:
                messages.append(f"{label} is not authorized in the prehospital formulary")
        return messages

    @property
    def warnings(self) -> List[str]:
        messages = [
            f"Brand name '{match.term}' used - refer to {match.generic}"
            for match in self.brand_names
        ]
        messages.extend(
            f"Unrecognized medication '{word}' - verify against the formulary"
            for word in self.unrecognized
        )
        return messages


class MedicationValidator:
    """Formulary membership checks over free text."""

    def __init__(self, formulary: Optional[Formulary] = None):
        self.formulary = formulary or default_formulary()

    def validate(self, text: str) -> MedicationCheck:
        check = MedicationCheck()
        for match in self.formulary.find_mentions(text):
            if match.status == MedicationStatus.UNAUTHORIZED:
                check.unauthorized.append(match)
            elif match.status == MedicationStatus.BRAND_NAME:
                check.brand_names.append(match)
            elif match.status == MedicationStatus.AUTHORIZED:
                check.authorized.append(match)
        check.unrecognized = self.formulary.find_unrecognized(text)

        if check.unauthorized:
            logger.debug(f"Unauthorized medications found: {[m.generic for m in check.unauthorized]}")
        return check
