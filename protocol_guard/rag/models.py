"""
Data model for protocol retrieval and validation.

Protocols are versioned treatment documents split into chunks; chunks carry
a content hash so a stale embedding can be detected without comparing text.
"""

import hashlib
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional


PEDIATRIC_SUFFIX = "-P"


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def base_code(code: str) -> str:
    """'1242-P' -> '1242'"""
    code = code.upper()
    return code[: -len(PEDIATRIC_SUFFIX)] if code.endswith(PEDIATRIC_SUFFIX) else code


def is_pediatric_code(code: str) -> bool:
    return code.upper().endswith(PEDIATRIC_SUFFIX)


# ============================================================================
# PROTOCOLS
# ============================================================================


@dataclass
class ProtocolChunk:
    """Searchable fragment of a protocol version."""

    protocol_code: str
    sequence: int
    text: str
    title: str = ""
    category: str = ""
    keywords: List[str] = field(default_factory=list)
    embedding: Optional[List[float]] = None
    embedding_hash: Optional[str] = None

    @property
    def chunk_id(self) -> str:
        return f"{self.protocol_code}:{self.sequence}"

    @property
    def content_hash(self) -> str:
        return content_hash(self.text)

    @property
    def has_valid_embedding(self) -> bool:
        """An embedding counts only if it was computed from the current text."""
        return bool(self.embedding) and self.embedding_hash == self.content_hash

    def with_text(self, text: str) -> "ProtocolChunk":
        """Copy with new text; the old embedding no longer applies."""
        return replace(self, text=text, embedding=None, embedding_hash=None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "protocol_code": self.protocol_code,
            "sequence": self.sequence,
            "title": self.title,
            "category": self.category,
            "text": self.text,
            "keywords": list(self.keywords),
            "content_hash": self.content_hash,
        }


@dataclass
class Protocol:
    """A single version of a clinical treatment protocol."""

    code: str
    name: str
    category: str = ""
    pediatric_code: Optional[str] = None
    chunks: List[ProtocolChunk] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    version: int = 1
    effective_date: Optional[date] = None
    expiration_date: Optional[date] = None
    is_current: bool = True
    deleted_at: Optional[datetime] = None
    base_contact_required: bool = False
    base_contact_criteria: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    contraindications: List[str] = field(default_factory=list)
    popularity: int = 0

    def __post_init__(self):
        self.code = self.code.upper()
        if self.pediatric_code:
            self.pediatric_code = self.pediatric_code.upper()

    @property
    def is_active(self) -> bool:
        return self.is_current and self.deleted_at is None

    @property
    def is_pediatric(self) -> bool:
        return is_pediatric_code(self.code)

    @property
    def family(self) -> str:
        return base_code(self.code)

    @property
    def full_text(self) -> str:
        return "\n\n".join(c.text for c in sorted(self.chunks, key=lambda c: c.sequence))

    def to_summary(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "name": self.name,
            "category": self.category,
            "version": self.version,
            "is_current": self.is_current,
            "base_contact_required": self.base_contact_required,
            "effective_date": self.effective_date.isoformat() if self.effective_date else None,
            "expiration_date": self.expiration_date.isoformat() if self.expiration_date else None,
        }


@dataclass(frozen=True)
class ProviderImpression:
    """Clinical impression code bridging symptom language to protocol codes."""

    code: str
    name: str
    protocol_code: str
    pediatric_protocol_code: Optional[str] = None
    keywords: tuple = ()
    symptoms: tuple = ()

    def code_for_age(self, patient_age: Optional[float], cutoff: int = 18) -> str:
        if patient_age is not None and patient_age < cutoff and self.pediatric_protocol_code:
            return self.pediatric_protocol_code
        return self.protocol_code


# ============================================================================
# FORMULARY
# ============================================================================


class Population(str, Enum):
    ADULT = "adult"
    PEDIATRIC = "pediatric"


@dataclass(frozen=True)
class DoseRange:
    """Inclusive dose bounds for one route and population."""

    route: str
    min_dose: float
    max_dose: float
    unit: str
    population: Population = Population.ADULT
    weight_based: bool = False

    def describe(self) -> str:
        per = "/kg" if self.weight_based else ""
        return f"{self.min_dose:g}-{self.max_dose:g} {self.unit}{per} {self.route} ({self.population.value})"


@dataclass
class FormularyEntry:
    """Generic medication with its aliases, routes and dose ranges."""

    name: str
    authorized: bool = True
    aliases: List[str] = field(default_factory=list)
    routes: List[str] = field(default_factory=list)
    dose_ranges: List[DoseRange] = field(default_factory=list)
    substitute: Optional[str] = None

    def ranges_for(self, population: Optional[Population], route: Optional[str] = None) -> List[DoseRange]:
        ranges = self.dose_ranges
        if population is not None:
            ranges = [r for r in ranges if r.population == population]
        if route:
            by_route = [r for r in ranges if r.route == route]
            if by_route:
                return by_route
        return list(ranges)


# ============================================================================
# QUERY / RESULTS
# ============================================================================


@dataclass
class NormalizedQuery:
    """Output of the query normalizer."""

    original: str
    text: str
    extracted_codes: List[str] = field(default_factory=list)
    protocol_codes: List[str] = field(default_factory=list)
    extracted_medications: List[str] = field(default_factory=list)
    matched_impressions: List[str] = field(default_factory=list)
    expansions: List[str] = field(default_factory=list)
    is_pediatric: bool = False
    patient_age: Optional[float] = None
    vague: bool = False

    @property
    def search_text(self) -> str:
        """Text handed to lexical search: normalized text plus expansions."""
        return " ".join([self.text] + self.expansions).strip()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "original": self.original,
            "text": self.text,
            "extracted_codes": list(self.extracted_codes),
            "protocol_codes": list(self.protocol_codes),
            "extracted_medications": list(self.extracted_medications),
            "matched_impressions": list(self.matched_impressions),
            "is_pediatric": self.is_pediatric,
            "patient_age": self.patient_age,
            "vague": self.vague,
        }


@dataclass
class RankedChunk:
    """A chunk with its hybrid score components."""

    chunk: ProtocolChunk
    score: float
    lexical_score: float = 0.0
    vector_score: Optional[float] = None
    popularity: int = 0
    effective_date: Optional[date] = None

    @property
    def protocol_code(self) -> str:
        return self.chunk.protocol_code

    @property
    def text(self) -> str:
        return self.chunk.text

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.chunk.to_dict(),
            "score": round(self.score, 6),
            "lexical_score": round(self.lexical_score, 6),
            "vector_score": None if self.vector_score is None else round(self.vector_score, 6),
        }


class Severity(str, Enum):
    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"


@dataclass
class Finding:
    """One validation finding."""

    code: str
    severity: Severity
    message: str
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "severity": self.severity.value,
            "message": self.message,
            "context": self.context,
        }


class ValidationStage(str, Enum):
    PRE_RETRIEVAL = "pre-retrieval"
    DURING_RETRIEVAL = "during-retrieval"
    PRE_RESPONSE = "pre-response"
    POST_RESPONSE = "post-response"


@dataclass
class ValidationResult:
    """Per-stage validation outcome; valid means no critical finding."""

    stage: ValidationStage
    findings: List[Finding] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def valid(self) -> bool:
        return not self.has_blocking

    @property
    def has_blocking(self) -> bool:
        return any(f.severity == Severity.CRITICAL for f in self.findings)

    @property
    def critical(self) -> List[Finding]:
        return [f for f in self.findings if f.severity == Severity.CRITICAL]

    @property
    def errors(self) -> List[Finding]:
        return [f for f in self.findings if f.severity == Severity.ERROR]

    @property
    def warnings(self) -> List[Finding]:
        return [f for f in self.findings if f.severity == Severity.WARNING]

    def by_code(self, code: str) -> List[Finding]:
        return [f for f in self.findings if f.code == code]

    def has(self, code: str, severity: Optional[Severity] = None) -> bool:
        return any(
            f.code == code and (severity is None or f.severity == severity)
            for f in self.findings
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage.value,
            "valid": self.valid,
            "findings": [f.to_dict() for f in self.findings],
        }


SAFE_DEGRADED_MESSAGE = "Protocol system degraded - contact base hospital directly."
SAFE_BLOCKED_MESSAGE = (
    "Unable to provide verified protocol guidance for this request - "
    "contact base hospital directly."
)


@dataclass
class RetrievalResponse:
    """Result of retrieve(): chunks plus validation and provenance."""

    query: NormalizedQuery
    chunks: List[RankedChunk] = field(default_factory=list)
    protocols: List[Protocol] = field(default_factory=list)
    validation: List[ValidationResult] = field(default_factory=list)
    strategy_used: str = "primary"
    fallbacks_used: List[str] = field(default_factory=list)
    degraded: bool = False
    blocked: bool = False
    safety_message: Optional[str] = None
    recovery_time_ms: float = 0.0

    @property
    def retrieved_codes(self) -> List[str]:
        seen: List[str] = []
        for ranked in self.chunks:
            if ranked.protocol_code not in seen:
                seen.append(ranked.protocol_code)
        return seen

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query.to_dict(),
            "chunks": [c.to_dict() for c in self.chunks],
            "protocols": [p.to_summary() for p in self.protocols],
            "validation": [v.to_dict() for v in self.validation],
            "strategy_used": self.strategy_used,
            "fallbacks_used": list(self.fallbacks_used),
            "degraded": self.degraded,
            "blocked": self.blocked,
            "safety_message": self.safety_message,
            "recovery_time_ms": round(self.recovery_time_ms, 2),
        }
