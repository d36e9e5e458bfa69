"""
Corpus Loader - JSON protocol corpus ingestion

Reads the flat-file protocol corpus used both to seed stores and as the
last data-bearing tier of the fallback chain.

Corpus format:
    {
      "protocols": [
        {
          "code": "1242", "name": "Crush Injury/Syndrome", "category": "Trauma",
          "pediatric_code": "1242-P", "keywords": ["crush"], "version": 1,
          "effective_date": "2024-07-01", "expiration_date": null,
          "base_contact_required": true, "warnings": [], "popularity": 40,
          "chunks": [{"title": "...", "text": "..."}]       # or "full_text"
        }
      ]
    }
"""

import json
import logging
import re
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ...core.error_handling import CorpusLoadError
from ..models import Protocol, ProtocolChunk
from ..trust.content_validator import ContentValidator

logger = logging.getLogger(__name__)

DEFAULT_CORPUS_PATH = Path(__file__).parent / "data" / "protocols.json"


def _parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    return date.fromisoformat(value[:10])


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def chunk_text(text: str, max_chars: int = 800) -> List[str]:
    """
    Split protocol text on blank lines, packing paragraphs up to max_chars.

    A single paragraph longer than max_chars is split on sentence ends.
    """
    paragraphs = [p.strip() for p in re.split(r"\n\s*\n", text or "") if p.strip()]
    pieces: List[str] = []
    for paragraph in paragraphs:
        if len(paragraph) <= max_chars:
            pieces.append(paragraph)
            continue
        sentence_buf = ""
        for sentence in re.split(r"(?<=[.!?])\s+", paragraph):
            if sentence_buf and len(sentence_buf) + len(sentence) + 1 > max_chars:
                pieces.append(sentence_buf)
                sentence_buf = sentence
            else:
                sentence_buf = f"{sentence_buf} {sentence}".strip()
        if sentence_buf:
            pieces.append(sentence_buf)

    chunks: List[str] = []
    buf = ""
    for piece in pieces:
        if buf and len(buf) + len(piece) + 2 > max_chars:
            chunks.append(buf)
            buf = piece
        else:
            buf = f"{buf}\n\n{piece}" if buf else piece
    if buf:
        chunks.append(buf)
    return chunks


def protocol_from_record(record: Dict[str, Any]) -> Protocol:
    code = str(record["code"]).upper()
    category = record.get("category", "")
    keywords = list(record.get("keywords", []))

    raw_chunks = record.get("chunks")
    if raw_chunks is None:
        raw_chunks = [{"text": t} for t in chunk_text(record.get("full_text", ""))]

    chunks = [
        ProtocolChunk(
            protocol_code=code,
            sequence=i,
            text=raw.get("text", ""),
            title=raw.get("title") or record.get("name", ""),
            category=category,
            keywords=list(raw.get("keywords", keywords)),
            embedding=raw.get("embedding"),
            embedding_hash=raw.get("embedding_hash"),
        )
        for i, raw in enumerate(raw_chunks)
    ]

    return Protocol(
        code=code,
        name=record.get("name", ""),
        category=category,
        pediatric_code=record.get("pediatric_code"),
        chunks=chunks,
        keywords=keywords,
        version=int(record.get("version", 1)),
        effective_date=_parse_date(record.get("effective_date")),
        expiration_date=_parse_date(record.get("expiration_date")),
        is_current=bool(record.get("is_current", True)),
        deleted_at=_parse_datetime(record.get("deleted_at")),
        base_contact_required=bool(record.get("base_contact_required", False)),
        base_contact_criteria=record.get("base_contact_criteria"),
        warnings=list(record.get("warnings", [])),
        contraindications=list(record.get("contraindications", [])),
        popularity=int(record.get("popularity", 0)),
    )


def protocols_from_records(records: List[Dict[str, Any]]) -> List[Protocol]:
    return [protocol_from_record(r) for r in records]


def load_corpus(path: Optional[Union[str, Path]] = None, validate: bool = True) -> List[Protocol]:
    """
    Load protocols from a JSON corpus file.

    With validate set, the corpus goes through the content validator;
    errors and warnings are logged, critical findings reject the file.

    Raises:
        CorpusLoadError: If the file is missing, malformed or fails validation
    """
    corpus_path = Path(path) if path else DEFAULT_CORPUS_PATH
    try:
        with open(corpus_path, "r", encoding="utf-8") as f:
            data = json.load(f)
        records = data["protocols"] if isinstance(data, dict) else data
        protocols = protocols_from_records(records)
    except (OSError, ValueError, KeyError, TypeError) as e:
        raise CorpusLoadError(
            f"Failed to load protocol corpus from {corpus_path}: {e}",
            details={"path": str(corpus_path)},
        ) from e

    if validate:
        report = ContentValidator().validate(protocols)
        if not report.valid:
            raise CorpusLoadError(
                f"Protocol corpus {corpus_path} failed content validation: "
                + "; ".join(f.message for f in report.critical),
                details={"path": str(corpus_path), "findings": [f.to_dict() for f in report.critical]},
            )

    logger.info(f"✅ Loaded {len(protocols)} protocols from {corpus_path}")
    return protocols
