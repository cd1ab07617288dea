"""Knowledge retrieval: interface, HTTP client and a local keyword-ranked base."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

import requests

from thrag.errors import RetrievalError
from thrag.io.ndjson import read_ndjson
from thrag.utils.time import coerce_ts, now_utc, to_iso_utc

logger = logging.getLogger(__name__)

_URL_RE = re.compile(r"https?://[^\s\"']+")
_TECHNIQUE_RE = re.compile(r"\bT\d{4}(?:\.\d{3})?\b")
_CVE_RE = re.compile(r"\bCVE-\d{4}-\d{4,}\b")
_TOKEN_RE = re.compile(r"[a-z0-9][a-z0-9_.:/-]*")


@dataclass(frozen=True)
class RetrievalFilters:
    min_confidence: Optional[float] = None
    tags: Tuple[str, ...] = ()
    date_range: Optional[Tuple[datetime, datetime]] = None
    sources: Tuple[str, ...] = ()
    tlp: Tuple[str, ...] = ()

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.min_confidence is not None:
            out["min_confidence"] = self.min_confidence
        if self.tags:
            out["tags"] = list(self.tags)
        if self.date_range is not None:
            out["date_range"] = {"start": to_iso_utc(self.date_range[0]), "end": to_iso_utc(self.date_range[1])}
        if self.sources:
            out["sources"] = list(self.sources)
        if self.tlp:
            out["tlp"] = list(self.tlp)
        return out


@dataclass(frozen=True)
class Document:
    id: str
    content: str
    source: str
    confidence: float
    tags: Tuple[str, ...]
    created: datetime
    score: float = 0.0
    title: str = "Untitled"
    tlp: str = "WHITE"
    citations: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Document":
        meta = d.get("metadata") or {}
        tags = d.get("tags", meta.get("tags", []))
        if isinstance(tags, str):
            tags = [t.strip() for t in tags.split(",") if t.strip()]
        created = coerce_ts(d.get("created", meta.get("created"))) or now_utc()
        content = str(d.get("content", ""))
        return cls(
            id=str(d.get("id", meta.get("source_id", "unknown"))),
            content=content,
            source=str(d.get("source", meta.get("source", "unknown"))),
            confidence=float(d.get("confidence", meta.get("confidence", 0.5))),
            tags=tuple(str(t) for t in tags),
            created=created,
            score=float(d.get("score", 0.0)),
            title=str(d.get("title", meta.get("title", "Untitled"))),
            tlp=str(d.get("tlp", meta.get("tlp", "WHITE"))),
            citations=tuple(d.get("citations") or extract_citations(content)),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "source": self.source,
            "confidence": self.confidence,
            "tags": list(self.tags),
            "created": to_iso_utc(self.created),
            "score": self.score,
            "title": self.title,
            "tlp": self.tlp,
            "citations": list(self.citations),
        }


class KnowledgeRetriever(Protocol):
    def retrieve(self, query: str, filters: RetrievalFilters, max_results: int = 10) -> List[Document]:
        ...


def passes_filters(doc: Document, filters: RetrievalFilters) -> bool:
    if filters.sources and doc.source not in filters.sources:
        return False
    if filters.min_confidence is not None and doc.confidence < filters.min_confidence:
        return False
    if filters.tlp and doc.tlp not in filters.tlp:
        return False
    if filters.tags and not any(t in doc.tags for t in filters.tags):
        return False
    if filters.date_range is not None:
        start, end = filters.date_range
        if doc.created < start or doc.created > end:
            return False
    return True


def extract_citations(content: str) -> List[str]:
    """URLs, ATT&CK technique ids and CVE ids mentioned in a document."""
    urls = _URL_RE.findall(content)
    techniques = [f"MITRE ATT&CK: {t}" for t in _TECHNIQUE_RE.findall(content)]
    cves = _CVE_RE.findall(content)
    return urls + techniques + cves


def overall_confidence(docs: Sequence[Document]) -> float:
    """Retrieval-score weighted mean of document confidence."""
    if not docs:
        return 0.0
    total = sum(d.score for d in docs)
    if total <= 0:
        return sum(d.confidence for d in docs) / len(docs)
    return sum(d.confidence * d.score for d in docs) / total


def all_citations(docs: Iterable[Document]) -> List[str]:
    out: List[str] = []
    for d in docs:
        out.append(f"{d.source}: {d.title}")
        out.extend(d.citations)
    return list(dict.fromkeys(out))


def _tokens(text: str) -> List[str]:
    return _TOKEN_RE.findall(text.lower())


class LocalKnowledgeBase:
    """In-process document set ranked by query term overlap.

    Good enough for tests and air-gapped deployments; production wiring
    plugs in :class:`HttpKnowledgeRetriever`.
    """

    def __init__(self, documents: Iterable[Document] = ()) -> None:
        self._docs: List[Document] = list(documents)

    @classmethod
    def from_ndjson(cls, path: str | Path) -> "LocalKnowledgeBase":
        return cls(Document.from_dict(d) for d in read_ndjson(path))

    def add(self, doc: Document) -> None:
        self._docs.append(doc)

    def __len__(self) -> int:
        return len(self._docs)

    def retrieve(self, query: str, filters: RetrievalFilters, max_results: int = 10) -> List[Document]:
        terms = set(_tokens(query))
        if not terms:
            return []
        ranked: List[Document] = []
        for doc in self._docs:
            if not passes_filters(doc, filters):
                continue
            haystack = set(_tokens(f"{doc.title} {doc.content} {' '.join(doc.tags)}"))
            hits = len(terms & haystack)
            if hits == 0:
                continue
            score = hits / len(terms)
            ranked.append(
                Document(
                    id=doc.id,
                    content=doc.content,
                    source=doc.source,
                    confidence=doc.confidence,
                    tags=doc.tags,
                    created=doc.created,
                    score=round(score, 6),
                    title=doc.title,
                    tlp=doc.tlp,
                    citations=doc.citations,
                )
            )
        ranked.sort(key=lambda d: (-d.score, d.id))
        return ranked[:max_results]


class HttpKnowledgeRetriever:
    """Client for a retrieval service answering ``POST {base_url}/retrieve``."""

    def __init__(self, base_url: str, timeout: float = 15.0, session: requests.Session | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http = session or requests.Session()

    def retrieve(self, query: str, filters: RetrievalFilters, max_results: int = 10) -> List[Document]:
        payload = {"query": query, "filters": filters.as_dict(), "max_results": max_results}
        try:
            r = self._http.post(f"{self.base_url}/retrieve", json=payload, timeout=self.timeout)
            r.raise_for_status()
            body = r.json()
        except (requests.RequestException, ValueError) as e:
            raise RetrievalError(f"retrieval failed for {query!r}: {e}") from e

        rows = body.get("results", []) if isinstance(body, dict) else body
        try:
            docs = [Document.from_dict(row) for row in rows if isinstance(row, dict)]
        except (TypeError, ValueError) as e:
            raise RetrievalError(f"malformed retrieval result for {query!r}: {e}") from e
        # The service may not honour every filter.
        docs = [d for d in docs if passes_filters(d, filters)]
        docs.sort(key=lambda d: -d.score)
        return docs[:max_results]
