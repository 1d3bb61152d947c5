"""
Embedding stage: crawled HTML -> text chunks -> Qdrant vectors.
"""

import asyncio
import hashlib
import logging
import re
from typing import Dict, List, Optional
from urllib.parse import urlparse

import trafilatura
from bs4 import BeautifulSoup
from qdrant_client import QdrantClient
from qdrant_client.http.models import (
    Distance, FieldCondition, Filter, MatchValue, PointStruct, VectorParams,
)

from content_store import ContentNotFoundError
from models import Page, utcnow
from stages import StageWorker

logger = logging.getLogger(__name__)

MIN_TEXT_CHARS = 50
PARAGRAPH_SEP = "\n\n"


def make_qdrant_client(url: str, api_key: Optional[str] = None) -> QdrantClient:
    """QdrantClient for a URL; HTTPS endpoints need explicit host/port/https."""
    parsed = urlparse(url)
    if parsed.scheme == "https":
        return QdrantClient(host=parsed.hostname, port=parsed.port or 443, https=True, api_key=api_key)
    return QdrantClient(url=url, api_key=api_key)


def extract_text(html: str) -> Dict[str, str]:
    """Title and main text of a page: trafilatura first, BeautifulSoup when that finds too little."""
    soup = BeautifulSoup(html or "", "html.parser")
    title_tag = soup.find("title")
    title = title_tag.get_text(strip=True) if title_tag else ""

    text = trafilatura.extract(html, include_links=False, include_tables=True) if html else None

    if not text or len(text) < MIN_TEXT_CHARS:
        for tag in soup(["script", "style", "nav", "footer", "header", "aside"]):
            tag.decompose()
        for sel in soup.select('[class*="cookie"], [class*="consent"], [id*="cookie"], [id*="consent"]'):
            sel.decompose()
        text = soup.get_text(separator="\n", strip=True)

    if text:
        text = re.sub(r"\n{3,}", "\n\n", text).strip()

    return {"title": title, "text": text or ""}


def _split_long(paragraph: str, max_chars: int) -> List[str]:
    """Break a paragraph longer than max_chars at sentence ends, then hard at max_chars."""
    if len(paragraph) <= max_chars:
        return [paragraph]

    pieces: List[str] = []
    buf = ""
    for sentence in re.split(r"(?<=[.!?])\s+", paragraph):
        while len(sentence) > max_chars:
            if buf:
                pieces.append(buf)
                buf = ""
            pieces.append(sentence[:max_chars])
            sentence = sentence[max_chars:]
        if buf and len(buf) + 1 + len(sentence) > max_chars:
            pieces.append(buf)
            buf = sentence
        else:
            buf = f"{buf} {sentence}" if buf else sentence
    if buf:
        pieces.append(buf)
    return pieces


def chunk_text(text: str, max_chars: int = 1200, overlap: int = 150) -> List[Dict]:
    """Pack a page's paragraphs into chunks of at most max_chars.

    Each chunk after the first opens with the trailing paragraphs of the one
    before it, as many as fit in `overlap` characters. Paragraphs longer than
    max_chars are split at sentence ends before packing.
    """
    units = [
        piece
        for para in re.split(r"\n\s*\n", text or "")
        if para.strip()
        for piece in _split_long(para.strip(), max_chars)
    ]

    chunks: List[str] = []
    window: List[str] = []
    for unit in units:
        if window and len(PARAGRAPH_SEP.join(window + [unit])) > max_chars:
            chunks.append(PARAGRAPH_SEP.join(window))
            tail: List[str] = []
            for prev in reversed(window):
                if len(PARAGRAPH_SEP.join([prev] + tail)) > overlap:
                    break
                tail.insert(0, prev)
            window = tail if len(PARAGRAPH_SEP.join(tail + [unit])) <= max_chars else []
        window.append(unit)
    if window:
        chunks.append(PARAGRAPH_SEP.join(window))

    return [{"text": chunk, "chunk_idx": i} for i, chunk in enumerate(chunks)]


def point_id(page_id: int, chunk_idx: int) -> int:
    h = hashlib.sha256(f"page:{page_id}:{chunk_idx}".encode()).hexdigest()
    return int(h[:16], 16)


class EmbeddingStage(StageWorker):
    COLLECTION_NAME = "crawled_pages"

    def __init__(self, store, locks, queue, content_store, model, client: QdrantClient, clock=utcnow):
        super().__init__("embedding", store, locks, queue, clock=clock)
        self.content_store = content_store
        self.model = model
        self.client = client
        self._collection_ready = False

    def _ensure_collection(self) -> None:
        if self._collection_ready:
            return
        collections = [c.name for c in self.client.get_collections().collections]
        if self.COLLECTION_NAME not in collections:
            self.client.create_collection(
                collection_name=self.COLLECTION_NAME,
                vectors_config=VectorParams(
                    size=self.model.get_sentence_embedding_dimension(),
                    distance=Distance.COSINE,
                ),
            )
            logger.info(f"Created collection: {self.COLLECTION_NAME}")
        self._collection_ready = True

    def build_points(self, page: Page, domain: str, title: str, chunks: List[Dict]) -> List[PointStruct]:
        embeddings = self.model.encode(
            [c["text"] for c in chunks],
            normalize_embeddings=True,
            batch_size=len(chunks),
        )
        return [
            PointStruct(
                id=point_id(page.id, chunk["chunk_idx"]),
                vector=embeddings[i].tolist(),
                payload={
                    "page_id": page.id,
                    "url": page.url,
                    "title": title,
                    "domain": domain,
                    "text": chunk["text"],
                    "chunk_idx": chunk["chunk_idx"],
                    "depth": page.depth,
                    "source_type": "crawl",
                },
            )
            for i, chunk in enumerate(chunks)
        ]

    def _index(self, page: Page, html: str) -> int:
        content = extract_text(html)
        chunks = chunk_text(content["text"])
        if not chunks:
            logger.info(f"[embedding] Page {page.id} has no usable text, nothing to index")
            return 0

        domain = self.store.get_domain_by_id(page.domain_id)
        points = self.build_points(page, domain.domain if domain else "", content["title"], chunks)

        self._ensure_collection()
        # A re-embedded page may produce fewer chunks than before
        self.client.delete(
            collection_name=self.COLLECTION_NAME,
            points_selector=Filter(
                must=[FieldCondition(key="page_id", match=MatchValue(value=page.id))]
            ),
        )
        self.client.upsert(collection_name=self.COLLECTION_NAME, points=points)
        return len(points)

    async def process(self, page: Page) -> None:
        if not page.raw_content_ref:
            raise ContentNotFoundError(f"Page {page.id} has no stored content")
        html = self.content_store.get(page.raw_content_ref)

        loop = asyncio.get_running_loop()
        indexed = await loop.run_in_executor(None, self._index, page, html)
        logger.info(f"[embedding] Indexed {indexed} chunks for {page.url}")
