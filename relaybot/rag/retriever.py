"""Source index for RAG mode.

Documents from a JSON file are cut into paragraph-packed passages, embedded
with sentence-transformers and searched through a FAISS inner-product index.
Search results come back as ready-to-render :class:`SourceCitation` objects.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

import faiss
from loguru import logger
from sentence_transformers import SentenceTransformer

from relaybot.agent.models import SourceCitation
from relaybot.core.config.schema import RagConfig

INDEX_FILE = "index.faiss"
EXCERPT_CHARS = 500


@dataclass(frozen=True)
class Passage:
    doc_id: str
    title: str
    author: str
    file_name: str
    text: str


def pack_paragraphs(text: str, max_chars: int) -> Iterator[str]:
    """Group blank-line separated paragraphs into passages of at most ``max_chars``.

    A single paragraph longer than the limit becomes its own passage.
    """
    current = ""
    for paragraph in (p.strip() for p in text.split("\n\n")):
        if not paragraph:
            continue
        if current and len(current) + len(paragraph) + 2 > max_chars:
            yield current
            current = paragraph
        else:
            current = f"{current}\n\n{paragraph}" if current else paragraph
    if current:
        yield current


class SemanticRetriever:
    """Passage-level semantic search over the configured document set.

    Parameters
    ----------
    config : RagConfig
        Data source, index location, field names and search limits.
    embedder : SentenceTransformer, optional
        Pre-loaded model; by default ``config.embedding_model`` is loaded.
    """

    def __init__(self, config: RagConfig, embedder: SentenceTransformer | None = None) -> None:
        self.config = config
        self.passages: list[Passage] = []
        self._embedder = embedder
        self._index: faiss.Index | None = None
        self.load()

    @property
    def ready(self) -> bool:
        return self._index is not None and bool(self.passages)

    @property
    def count(self) -> int:
        return len(self.passages)

    def load(self) -> None:
        self.passages = [p for doc in self._read_documents() for p in self._split(doc)]
        if not self.passages:
            logger.warning(f"RAG: no passages loaded from {self.config.data_source}")
            return

        index_file = Path(self.config.index_path) / INDEX_FILE
        if index_file.exists():
            index = faiss.read_index(str(index_file))
            if index.ntotal == len(self.passages):
                self._index = index
                logger.info(f"RAG: loaded index with {index.ntotal} passages")
                return
            logger.warning("RAG: stored index does not match the documents, rebuilding")
        self._build(index_file)

    def rebuild_index(self) -> None:
        self._build(Path(self.config.index_path) / INDEX_FILE)

    def search(self, query: str, top_k: int | None = None) -> list[SourceCitation]:
        """Best passages for ``query``, most relevant first, above ``min_relevance``."""
        if not self.ready:
            return []
        k = min(top_k or self.config.top_k, len(self.passages))
        scores, ids = self._index.search(self._encode([query]), k)

        citations: list[SourceCitation] = []
        for score, idx in zip(scores[0], ids[0]):
            if idx < 0 or score < self.config.min_relevance:
                continue
            passage = self.passages[idx]
            citations.append(
                SourceCitation(
                    title=passage.title,
                    file_name=passage.file_name,
                    author=passage.author,
                    relevance=round(float(score), 4),
                    content=passage.text[:EXCERPT_CHARS],
                    metadata={"id": passage.doc_id, "passage": int(idx)},
                )
            )
        return citations

    # ── Internal ────────────────────────────────────────────

    def _read_documents(self) -> list[dict[str, Any]]:
        path = Path(self.config.data_source)
        if not path.exists():
            logger.warning(f"RAG data file not found: {path}")
            return []
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        return [d for d in data if isinstance(d, dict)] if isinstance(data, list) else []

    def _split(self, doc: dict[str, Any]) -> list[Passage]:
        cfg = self.config
        title = str(doc.get(cfg.title_field) or doc.get(cfg.id_field) or "")
        return [
            Passage(
                doc_id=str(doc.get(cfg.id_field, "")),
                title=title,
                author=str(doc.get(cfg.author_field) or ""),
                file_name=str(doc.get(cfg.file_field) or ""),
                text=chunk,
            )
            for chunk in pack_paragraphs(str(doc.get(cfg.content_field) or ""), cfg.passage_chars)
        ]

    def _encode(self, texts: list[str]):
        if self._embedder is None:
            logger.info(f"RAG: loading embedding model {self.config.embedding_model}")
            self._embedder = SentenceTransformer(self.config.embedding_model)
        vectors = self._embedder.encode(
            texts, convert_to_numpy=True, normalize_embeddings=True, show_progress_bar=False
        )
        return vectors.astype("float32")

    def _build(self, index_file: Path) -> None:
        vectors = self._encode([f"{p.title}\n{p.text}" for p in self.passages])
        index = faiss.IndexFlatIP(vectors.shape[1])
        index.add(vectors)
        index_file.parent.mkdir(parents=True, exist_ok=True)
        faiss.write_index(index, str(index_file))
        self._index = index
        logger.info(f"RAG: indexed {index.ntotal} passages into {index_file}")
