"""
Protocol Content Validator

Corpus-level checks run when protocols are loaded or seeded, before any of
them can be retrieved:

- completeness: code, name, category and chunk text present
- code format: four digits with an optional "-P" pediatric suffix
- sections: sectioned protocols carry the expected headings
- versions: one current version per code, no repeated version numbers,
  effective date before expiration date
- duplicates and orphans: pediatric links point at a loaded protocol
- references: "TP 1210" style citations resolve, and citations do not loop

Findings use the same severity scale as the validation pipeline. A critical
finding means the corpus must not be served.

Usage:
    report = ContentValidator().validate(protocols)
    if not report.valid:
        raise CorpusLoadError(...)
    report.score              # 0-100
"""

import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from ..models import Finding, Protocol, Severity, base_code, is_pediatric_code
from .citations import MCG_REFERENCE, PREFIXED_CODE

logger = logging.getLogger(__name__)

CODE_FORMAT = re.compile(r"^\d{4}(?:-P)?$")
DEFAULT_REQUIRED_SECTIONS = ("treatment",)

_SEVERITY_PENALTY = {Severity.CRITICAL: 25, Severity.ERROR: 10, Severity.WARNING: 2}


@dataclass
class ContentReport:
    """Findings for one corpus."""

    protocol_count: int = 0
    findings: List[Finding] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not any(f.severity == Severity.CRITICAL for f in self.findings)

    @property
    def critical(self) -> List[Finding]:
        return [f for f in self.findings if f.severity == Severity.CRITICAL]

    @property
    def errors(self) -> List[Finding]:
        return [f for f in self.findings if f.severity == Severity.ERROR]

    @property
    def warnings(self) -> List[Finding]:
        return [f for f in self.findings if f.severity == Severity.WARNING]

    @property
    def score(self) -> int:
        return max(0, 100 - sum(_SEVERITY_PENALTY[f.severity] for f in self.findings))

    def by_code(self, code: str) -> List[Finding]:
        return [f for f in self.findings if f.code == code]

    def has(self, code: str, severity: Optional[Severity] = None) -> bool:
        return any(
            f.code == code and (severity is None or f.severity == severity)
            for f in self.findings
        )

    def for_protocol(self, code: str) -> List[Finding]:
        return [f for f in self.findings if f.context.get("code") == code]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "score": self.score,
            "protocol_count": self.protocol_count,
            "findings": [f.to_dict() for f in self.findings],
        }


def referenced_codes(text: str) -> List[str]:
    """Codes cited with a TP/Protocol prefix; bare numbers are too ambiguous here."""
    codes: List[str] = []
    for m in PREFIXED_CODE.finditer(MCG_REFERENCE.sub(" ", text or "")):
        code = m.group(1).upper()
        if code not in codes:
            codes.append(code)
    return codes


class ContentValidator:
    """Structural and cross-reference checks over a protocol corpus."""

    def __init__(
        self,
        min_chunk_length: int = 0,
        required_sections: Sequence[str] = DEFAULT_REQUIRED_SECTIONS,
    ):
        self.min_chunk_length = min_chunk_length
        self.required_sections = tuple(s.lower() for s in required_sections)

    # ------------------------------------------------------------------
    # Per protocol
    # ------------------------------------------------------------------

    def check_completeness(self, protocol: Protocol) -> List[Finding]:
        code = (protocol.code or "").strip()
        findings = []
        if not code:
            findings.append(Finding("missing-code", Severity.CRITICAL,
                                    f"Protocol '{protocol.name}' has no code", {"code": code}))
        if not (protocol.name or "").strip():
            findings.append(Finding("missing-name", Severity.ERROR,
                                    f"Protocol {code} has no name", {"code": code}))
        if not (protocol.category or "").strip():
            findings.append(Finding("missing-category", Severity.WARNING,
                                    f"Protocol {code} has no category", {"code": code}))

        texts = [(c.text or "").strip() for c in protocol.chunks]
        if not any(texts):
            findings.append(Finding("no-content", Severity.ERROR,
                                    f"Protocol {code} has no content", {"code": code}))
            return findings

        for chunk, text in zip(protocol.chunks, texts):
            if len(text) < self.min_chunk_length:
                findings.append(Finding(
                    "thin-chunk", Severity.WARNING,
                    f"Chunk {chunk.chunk_id} has {len(text)} characters",
                    {"code": code, "chunk_id": chunk.chunk_id},
                ))
        return findings

    @staticmethod
    def check_code_format(protocol: Protocol) -> List[Finding]:
        findings = []
        for label, value in (("code", protocol.code), ("pediatric_code", protocol.pediatric_code)):
            if value and not CODE_FORMAT.match(value):
                findings.append(Finding(
                    "invalid-code-format", Severity.WARNING,
                    f"Protocol {protocol.code} {label} '{value}' is not like '1234' or '1234-P'",
                    {"code": protocol.code, "field": label, "value": value},
                ))
        return findings

    def check_sections(self, protocol: Protocol) -> List[Finding]:
        headings = {
            re.sub(r"[^a-z]", "", c.title.lower())
            for c in protocol.chunks
            if c.title and c.title != protocol.name
        }
        if not headings:
            # unsectioned text has no headings to check
            return []

        findings = []
        for section in self.required_sections:
            if not any(section in heading for heading in headings):
                findings.append(Finding(
                    "missing-section", Severity.WARNING,
                    f"Protocol {protocol.code} has no '{section}' section",
                    {"code": protocol.code, "section": section},
                ))
        return findings

    @staticmethod
    def check_dates(protocol: Protocol) -> List[Finding]:
        if protocol.effective_date and protocol.expiration_date:
            if protocol.expiration_date < protocol.effective_date:
                return [Finding(
                    "invalid-effective-window", Severity.ERROR,
                    f"Protocol {protocol.code} v{protocol.version} expires "
                    f"{protocol.expiration_date} before it takes effect {protocol.effective_date}",
                    {"code": protocol.code, "version": protocol.version},
                )]
        return []

    # ------------------------------------------------------------------
    # Corpus wide
    # ------------------------------------------------------------------

    @staticmethod
    def check_versions(protocols: Sequence[Protocol]) -> List[Finding]:
        by_code: Dict[str, List[Protocol]] = defaultdict(list)
        for protocol in protocols:
            if protocol.deleted_at is None:
                by_code[protocol.code].append(protocol)

        findings = []
        for code in sorted(by_code):
            versions = by_code[code]
            seen: Set[int] = set()
            for protocol in versions:
                if protocol.version in seen:
                    findings.append(Finding(
                        "duplicate-version", Severity.ERROR,
                        f"Protocol {code} version {protocol.version} appears more than once",
                        {"code": code, "version": protocol.version},
                    ))
                seen.add(protocol.version)

            current = [p for p in versions if p.is_current]
            if len(current) > 1:
                findings.append(Finding(
                    "duplicate-protocol-code", Severity.ERROR,
                    f"{len(current)} current versions claim protocol {code}",
                    {"code": code, "versions": sorted(p.version for p in current)},
                ))
            elif len(current) == 1 and current[0].version < max(seen):
                findings.append(Finding(
                    "stale-current-version", Severity.WARNING,
                    f"Protocol {code} marks v{current[0].version} current but v{max(seen)} exists",
                    {"code": code, "current": current[0].version, "latest": max(seen)},
                ))
        return findings

    @staticmethod
    def check_pediatric_links(protocols: Sequence[Protocol]) -> List[Finding]:
        codes = {p.code for p in protocols if p.is_active}
        findings = []
        for protocol in protocols:
            if not protocol.is_active:
                continue
            if protocol.pediatric_code and protocol.pediatric_code not in codes:
                findings.append(Finding(
                    "missing-pediatric-variant", Severity.ERROR,
                    f"Protocol {protocol.code} links pediatric variant "
                    f"{protocol.pediatric_code}, which is not loaded",
                    {"code": protocol.code, "pediatric_code": protocol.pediatric_code},
                ))
            if is_pediatric_code(protocol.code) and base_code(protocol.code) not in codes:
                findings.append(Finding(
                    "orphan-pediatric-variant", Severity.WARNING,
                    f"Pediatric protocol {protocol.code} has no adult protocol "
                    f"{base_code(protocol.code)}",
                    {"code": protocol.code},
                ))
        return findings

    @staticmethod
    def reference_graph(protocols: Iterable[Protocol]) -> Dict[str, List[str]]:
        graph: Dict[str, List[str]] = {}
        for protocol in protocols:
            if protocol.is_active:
                graph[protocol.code] = [
                    c for c in referenced_codes(protocol.full_text) if c != protocol.code
                ]
        return graph

    def check_references(self, protocols: Sequence[Protocol]) -> List[Finding]:
        graph = self.reference_graph(protocols)
        findings = []
        for code in sorted(graph):
            for ref in graph[code]:
                if ref not in graph:
                    findings.append(Finding(
                        "unresolved-reference", Severity.WARNING,
                        f"Protocol {code} cites TP {ref}, which is not loaded",
                        {"code": code, "reference": ref},
                    ))
        for cycle in self.find_cycles(graph):
            findings.append(Finding(
                "circular-reference", Severity.ERROR,
                f"Circular protocol references: {' -> '.join(cycle)}",
                {"code": cycle[0], "cycle": cycle},
            ))
        return findings

    @staticmethod
    def find_cycles(graph: Dict[str, List[str]]) -> List[List[str]]:
        """
        Reference loops, each reported once starting from its smallest code.

        A loop of two ("1210 -> 1211 -> 1210") counts; self-references are
        dropped before the graph is built.
        """
        cycles: List[List[str]] = []
        seen_loops: Set[tuple] = set()
        done: Set[str] = set()

        def visit(code: str, path: List[str]) -> None:
            if code in path:
                loop = path[path.index(code):]
                start = loop.index(min(loop))
                loop = loop[start:] + loop[:start]
                if tuple(loop) not in seen_loops:
                    seen_loops.add(tuple(loop))
                    cycles.append(loop + [loop[0]])
                return
            if code in done or code not in graph:
                return
            path.append(code)
            for ref in graph[code]:
                visit(ref, path)
            path.pop()
            done.add(code)

        for code in sorted(graph):
            visit(code, [])
        return cycles

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def validate(self, protocols: Sequence[Protocol]) -> ContentReport:
        protocols = list(protocols)
        report = ContentReport(protocol_count=len(protocols))
        for protocol in protocols:
            report.findings.extend(self.check_completeness(protocol))
            report.findings.extend(self.check_code_format(protocol))
            report.findings.extend(self.check_sections(protocol))
            report.findings.extend(self.check_dates(protocol))
        report.findings.extend(self.check_versions(protocols))
        report.findings.extend(self.check_pediatric_links(protocols))
        report.findings.extend(self.check_references(protocols))

        for finding in report.critical + report.errors:
            logger.warning(
                f"Corpus {finding.severity.value}: {finding.message}",
                extra={"finding": finding.code, "protocol_code": finding.context.get("code")},
            )
        logger.info(
            f"Content validation: {len(protocols)} protocols, "
            f"{len(report.critical)} critical, {len(report.errors)} errors, "
            f"{len(report.warnings)} warnings, score {report.score}"
        )
        return report
