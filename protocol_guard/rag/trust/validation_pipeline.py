"""
Four-Stage Validation Pipeline

Stage 1 (pre-retrieval)    - the normalized query
Stage 2 (during-retrieval) - retrieved protocols and chunks
Stage 3 (pre-response)     - the context handed to the answer generator
Stage 4 (post-response)    - the generated answer, against the same
                             retrieved protocol set (hallucination gate)

Every stage is a pure function of its inputs plus read-only reference data
and returns a ValidationResult. Critical findings are blocking; errors and
warnings are surfaced without blocking. The only side effect is an optional
"validation.completed" telemetry event per stage.

Usage:
    pipeline = ValidationPipeline(ReferenceData.default())
    stage1 = pipeline.validate_query(normalized)
    stage2 = pipeline.validate_retrieved(protocols, ranked_chunks)
    stage4 = pipeline.validate_answer(answer_text, protocols, normalized)
"""

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Set

from ...core.config import ValidationConfig
from ...core.error_handling import InvalidInputError
from ...core.telemetry import TelemetryRecorder
from ..knowledge_base.formulary import Formulary, MedicationStatus, default_formulary
from ..knowledge_base.provider_impressions import ProviderImpressionTable, default_impressions
from ..models import (
    Finding,
    NormalizedQuery,
    Protocol,
    RankedChunk,
    Severity,
    ValidationResult,
    ValidationStage,
)
from .citations import CitationExtractor
from .conflict_detector import ConflictDetector
from .dose_validator import DoseValidator, population_for
from .medication_validator import MedicationValidator

logger = logging.getLogger(__name__)

BASE_CONTACT_PATTERN = re.compile(r"base\s+hospital", re.IGNORECASE)
CONTRAINDICATION_PATTERN = re.compile(r"contraindicat", re.IGNORECASE)
TIME_SENSITIVE_PATTERN = re.compile(r"\b(?:time|urgent|immediate)", re.IGNORECASE)


@dataclass
class ReferenceData:
    """Read-only lookups shared by every stage."""

    known_codes: Set[str] = field(default_factory=set)
    formulary: Formulary = field(default_factory=default_formulary)
    impressions: Optional[ProviderImpressionTable] = None

    @classmethod
    def default(cls, extra_codes: Iterable[str] = ()) -> "ReferenceData":
        impressions = default_impressions()
        codes = impressions.known_codes() | {c.upper() for c in extra_codes}
        return cls(known_codes=codes, formulary=default_formulary(), impressions=impressions)

    def is_known(self, code: str) -> bool:
        return code.upper() in self.known_codes

    def add_codes(self, codes: Iterable[str]) -> None:
        self.known_codes.update(c.upper() for c in codes)


class ValidationPipeline:
    """
    Runs the four validation stages.

    Args:
        reference: Known protocol codes and the medication formulary
        config: Thresholds (minimum chunk length, age cutoff)
        telemetry: Optional recorder for per-stage outcome events
    """

    def __init__(
        self,
        reference: Optional[ReferenceData] = None,
        config: Optional[ValidationConfig] = None,
        telemetry: Optional[TelemetryRecorder] = None,
    ):
        self.reference = reference or ReferenceData.default()
        self.config = config or ValidationConfig()
        self.telemetry = telemetry
        formulary = self.reference.formulary
        self.medications = MedicationValidator(formulary)
        self.doses = DoseValidator(formulary, tolerance=self.config.dose_tolerance)
        self.citations = CitationExtractor()
        self.conflicts = ConflictDetector(formulary)

    # ========================================================================
    # STAGE 1: PRE-RETRIEVAL
    # ========================================================================

    def validate_query(self, query: NormalizedQuery) -> ValidationResult:
        start = time.perf_counter()
        result = ValidationResult(stage=ValidationStage.PRE_RETRIEVAL)

        for code in query.extracted_codes:
            if not self.reference.is_known(code):
                result.findings.append(Finding(
                    "invalid-protocol-code",
                    Severity.CRITICAL,
                    f"Protocol {code} does not exist",
                    {"code": code},
                ))

        if query.extracted_medications and not query.protocol_codes and not query.matched_impressions:
            result.findings.append(Finding(
                "medication-without-protocol",
                Severity.WARNING,
                "Medication named without a clinical context or protocol",
                {"medications": list(query.extracted_medications)},
            ))

        if query.vague:
            result.findings.append(Finding(
                "vague-query",
                Severity.WARNING,
                "Query is too short or generic to select a protocol",
                {"query": query.text},
            ))

        for med in query.extracted_medications:
            match = self.reference.formulary.classify(med)
            if match.status == MedicationStatus.UNAUTHORIZED:
                hint = f" - use {match.substitute}" if match.substitute else ""
                result.findings.append(Finding(
                    "unauthorized-medication-query",
                    Severity.WARNING,
                    f"{med} is not in the authorized formulary{hint}",
                    {"medication": med, "substitute": match.substitute},
                ))

        return self._finish(result, start, query)

    # ========================================================================
    # STAGE 2: DURING-RETRIEVAL
    # ========================================================================

    def validate_retrieved(
        self,
        protocols: Sequence[Protocol],
        chunks: Sequence[RankedChunk],
        now: Optional[datetime] = None,
        query: Optional[NormalizedQuery] = None,
        unavailable: Iterable[str] = (),
    ) -> ValidationResult:
        """
        Check every retrieved protocol and chunk.

        metadata["chunks"] holds the chunks that remain deliverable: chunks
        of protocols with a critical finding and chunks below the minimum
        length are removed. Codes in `unavailable` had metadata that could
        not be read; their currency cannot be verified, so their chunks are
        withheld under a protocol-metadata-unavailable error rather than
        reported as deprecated. metadata["unavailable_codes"] lists them.
        """
        start = time.perf_counter()
        today = (now or datetime.now()).date()
        result = ValidationResult(stage=ValidationStage.DURING_RETRIEVAL)
        by_code = {p.code: p for p in protocols}

        codes: List[str] = []
        for ranked in chunks:
            if ranked.protocol_code not in codes:
                codes.append(ranked.protocol_code)

        if not chunks:
            result.findings.append(Finding(
                "no-protocols-retrieved",
                Severity.WARNING,
                "No protocols matched the query",
            ))

        unreachable = {c.upper() for c in unavailable}
        withheld: Set[str] = set()
        blocked_codes: Set[str] = set()
        for code in codes:
            if code in unreachable and code not in by_code:
                withheld.add(code)
                result.findings.append(Finding(
                    "protocol-metadata-unavailable",
                    Severity.ERROR,
                    f"Protocol {code} metadata could not be read; its content is withheld",
                    {"code": code},
                ))
                continue

            protocol = by_code.get(code)
            if protocol is None or not protocol.is_active:
                blocked_codes.add(code)
                result.findings.append(Finding(
                    "deprecated-protocol",
                    Severity.CRITICAL,
                    f"Protocol {code} is not current or has been removed",
                    {"code": code},
                ))
                continue

            if protocol.expiration_date and today > protocol.expiration_date:
                blocked_codes.add(code)
                result.findings.append(Finding(
                    "protocol-expired",
                    Severity.CRITICAL,
                    f"Protocol {code} expired on {protocol.expiration_date.isoformat()}",
                    {"code": code, "expiration_date": protocol.expiration_date.isoformat()},
                ))
            if protocol.effective_date and today < protocol.effective_date:
                result.findings.append(Finding(
                    "protocol-not-effective",
                    Severity.ERROR,
                    f"Protocol {code} is not effective until {protocol.effective_date.isoformat()}",
                    {"code": code, "effective_date": protocol.effective_date.isoformat()},
                ))
            if not protocol.name.strip():
                result.findings.append(Finding(
                    "missing-protocol-name",
                    Severity.ERROR,
                    f"Protocol {code} has no name",
                    {"code": code},
                ))
            if protocol.warnings:
                result.findings.append(Finding(
                    "critical-warnings-present",
                    Severity.WARNING,
                    f"Protocol {code} carries {len(protocol.warnings)} warning(s)",
                    {"code": code, "warnings": list(protocol.warnings)},
                ))

        short_chunks: Set[str] = set()
        for ranked in chunks:
            length = len(ranked.chunk.text.strip())
            if length < self.config.min_chunk_length:
                short_chunks.add(ranked.chunk.chunk_id)
                result.findings.append(Finding(
                    "incomplete-protocol",
                    Severity.CRITICAL,
                    f"Chunk {ranked.chunk.chunk_id} is incomplete ({length} characters)",
                    {"chunk_id": ranked.chunk.chunk_id, "length": length},
                ))

        retrieved = [by_code[c] for c in codes if c in by_code]
        for conflict in self.conflicts.protocol_conflicts(retrieved):
            result.findings.append(Finding(
                "protocol-conflicts",
                Severity.WARNING,
                conflict,
                {"codes": [p.code for p in retrieved]},
            ))

        removed = blocked_codes | withheld
        result.metadata["chunks"] = [
            r for r in chunks
            if r.protocol_code not in removed and r.chunk.chunk_id not in short_chunks
        ]
        result.metadata["removed_codes"] = sorted(blocked_codes)
        result.metadata["unavailable_codes"] = sorted(withheld)
        return self._finish(result, start, query)

    # ========================================================================
    # STAGE 3: PRE-RESPONSE
    # ========================================================================

    def validate_context(
        self,
        context: str,
        protocols: Sequence[Protocol],
        query: Optional[NormalizedQuery] = None,
    ) -> ValidationResult:
        if not isinstance(context, str):
            raise InvalidInputError("context must be a string", {"type": type(context).__name__})
        start = time.perf_counter()
        result = ValidationResult(stage=ValidationStage.PRE_RESPONSE)
        retrieved = {p.code for p in protocols}

        for code in self.citations.extract(context):
            if code not in retrieved:
                result.findings.append(Finding(
                    "unretrieved-citation",
                    Severity.ERROR,
                    f"Context mentions protocol {code} which was not retrieved",
                    {"code": code, "retrieved": sorted(retrieved)},
                ))

        check = self.medications.validate(context)
        for message in check.errors:
            result.findings.append(Finding("context-medication-error", Severity.CRITICAL, message))
        for message in check.warnings:
            result.findings.append(Finding("context-medication-warning", Severity.WARNING, message))

        for protocol in protocols:
            if protocol.base_contact_required and not BASE_CONTACT_PATTERN.search(context):
                result.findings.append(Finding(
                    "missing-base-contact",
                    Severity.ERROR,
                    f"Context for {protocol.code} omits the base hospital contact directive",
                    {"code": protocol.code, "criteria": protocol.base_contact_criteria},
                ))

        self._check_doses(result, context, query, report_unknown=True)

        for protocol in protocols:
            urgent = [w for w in protocol.warnings if TIME_SENSITIVE_PATTERN.search(w)]
            if urgent:
                result.findings.append(Finding(
                    "time-sensitive-protocol",
                    Severity.WARNING,
                    f"Protocol {protocol.code} is time-sensitive",
                    {"code": protocol.code, "warnings": urgent},
                ))

        return self._finish(result, start, query)

    # ========================================================================
    # STAGE 4: POST-RESPONSE
    # ========================================================================

    def validate_answer(
        self,
        answer: str,
        protocols: Sequence[Protocol],
        query: Optional[NormalizedQuery] = None,
    ) -> ValidationResult:
        """
        Hallucination gate: the answer may only cite what was retrieved.

        Base-contact and contraindication requirements apply to the
        protocols the answer cites, or to every retrieved protocol when it
        cites none.
        """
        if not isinstance(answer, str):
            raise InvalidInputError("answer must be a string", {"type": type(answer).__name__})
        start = time.perf_counter()
        result = ValidationResult(stage=ValidationStage.POST_RESPONSE)
        retrieved = {p.code: p for p in protocols}

        cited = self.citations.extract(answer)
        for code in cited:
            if code not in retrieved:
                result.findings.append(Finding(
                    "hallucinated-citation",
                    Severity.CRITICAL,
                    f"Answer cites protocol {code} which is not among the retrieved protocols",
                    {"citation": code, "retrieved": sorted(retrieved)},
                ))

        names = {code: p.name for code, p in retrieved.items()}
        for citation in self.citations.mismatched_names(answer, names):
            result.findings.append(Finding(
                "invalid-protocol-citation",
                Severity.ERROR,
                f"Answer calls {citation.code} '{citation.cited_name}' but it is '{names[citation.code]}'",
                {"citation": citation.code, "cited_name": citation.cited_name},
            ))

        check = self.medications.validate(answer)
        for message in check.errors:
            result.findings.append(Finding(
                "response-medication-error", Severity.CRITICAL, message,
                {"medications": [m.generic for m in check.unauthorized]},
            ))
        for message in check.warnings:
            result.findings.append(Finding("response-medication-warning", Severity.WARNING, message))

        self._check_doses(result, answer, query, report_unknown=False)

        contradictions = self.conflicts.contradictions(answer)
        if contradictions:
            result.findings.append(Finding(
                "response-contradictions",
                Severity.ERROR,
                "Answer contains contradictory directions",
                {"contradictions": [c.to_dict() for c in contradictions]},
            ))

        relevant = [retrieved[c] for c in cited if c in retrieved] or list(protocols)
        for protocol in relevant:
            if protocol.base_contact_required and not BASE_CONTACT_PATTERN.search(answer):
                result.findings.append(Finding(
                    "missing-base-contact-requirement",
                    Severity.CRITICAL,
                    f"Answer omits the base hospital contact required by {protocol.code}",
                    {"code": protocol.code},
                ))
            if protocol.contraindications and not CONTRAINDICATION_PATTERN.search(answer):
                result.findings.append(Finding(
                    "contraindications-not-mentioned",
                    Severity.WARNING,
                    f"Protocol {protocol.code} has contraindications the answer does not mention",
                    {"code": protocol.code, "contraindications": list(protocol.contraindications)},
                ))

        return self._finish(result, start, query)

    # ========================================================================
    # HELPERS
    # ========================================================================

    def _check_doses(
        self,
        result: ValidationResult,
        text: str,
        query: Optional[NormalizedQuery],
        report_unknown: bool,
    ) -> None:
        population = population_for(query)
        for dose in self.doses.validate(text, population):
            context = {
                "medication": dose.mention.medication,
                "dose": dose.mention.text,
                "population": population.value if population else None,
            }
            if not dose.within_range:
                result.findings.append(Finding("dose-out-of-range", Severity.CRITICAL, dose.message, context))
            elif not dose.known and report_unknown:
                result.findings.append(Finding("dose-range-unknown", Severity.WARNING, dose.message, context))

    def _finish(
        self,
        result: ValidationResult,
        start: float,
        query: Optional[NormalizedQuery],
    ) -> ValidationResult:
        duration_ms = (time.perf_counter() - start) * 1000
        result.metadata["duration_ms"] = duration_ms

        if result.has_blocking:
            logger.warning(
                f"Validation {result.stage.value} blocked: {[f.code for f in result.critical]}",
                extra={"stage": result.stage.value},
            )
        elif result.findings:
            logger.info(
                f"Validation {result.stage.value}: {len(result.findings)} finding(s)",
                extra={"stage": result.stage.value},
            )

        if self.telemetry is not None:
            self.telemetry.record(
                "validation.completed",
                stage=result.stage.value,
                valid=result.valid,
                critical=len(result.critical),
                errors=len(result.errors),
                warnings=len(result.warnings),
                codes=[f.code for f in result.findings],
                messages={f.code: f.message for f in result.findings},
                duration_ms=round(duration_ms, 3),
                query=query.text if query is not None else None,
            )
        return result
