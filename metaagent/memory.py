"""Long-term memory: documents, token-bounded chunking, and an in-process store."""

import logging
import re
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Protocol

import numpy as np
import tiktoken

from .report import AgentError

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_CONTEXT_SIZE = 2046
DEFAULT_K = 4

_OPENAI_EMBEDDING_MODELS = {
    "text-embedding-ada-002",
    "text-embedding-3-small",
    "text-embedding-3-large",
}

_WORD_RE = re.compile(r"\w+")

Embedder = Callable[[list[str]], Awaitable[list[list[float]]]]


@dataclass
class Document:
    content: str
    metadata: dict = field(default_factory=dict)


class MemoryStore(Protocol):
    """What the agent loop needs from long-term memory."""

    async def relevant(self, query: str) -> list[Document]: ...

    async def add_documents(self, documents: list[Document]) -> None: ...


def get_embedding_context_size(model: str | None) -> int:
    """Token window of the embedding model, used as the memory chunk size."""
    if model and model.rsplit("/", 1)[-1] in _OPENAI_EMBEDDING_MODELS:
        return 8191
    return DEFAULT_EMBEDDING_CONTEXT_SIZE


class TokenTextSplitter:
    """Split text into chunks of at most chunk_size tokens.

    Consecutive chunks share chunk_overlap tokens so that a memory entry
    cut in half stays retrievable from either side.
    """

    def __init__(
        self,
        chunk_size: int = DEFAULT_EMBEDDING_CONTEXT_SIZE,
        chunk_overlap: int | None = None,
        encoding_name: str = "cl100k_base",
    ):
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        if chunk_overlap is None:
            chunk_overlap = round(chunk_size / 10)
        if chunk_overlap >= chunk_size:
            raise ValueError(
                f"chunk_overlap ({chunk_overlap}) must be smaller than chunk_size ({chunk_size})"
            )
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self._encoder = tiktoken.get_encoding(encoding_name)

    @classmethod
    def for_embedding_model(cls, model: str | None) -> "TokenTextSplitter":
        return cls(chunk_size=get_embedding_context_size(model))

    def split_text(self, text: str) -> list[str]:
        tokens = self._encoder.encode(text, disallowed_special=())
        if not tokens:
            return []
        chunks = []
        step = self.chunk_size - self.chunk_overlap
        start = 0
        while start < len(tokens):
            window = tokens[start : start + self.chunk_size]
            chunks.append(self._encoder.decode(window))
            if start + self.chunk_size >= len(tokens):
                break
            start += step
        return chunks

    def create_documents(
        self, texts: list[str], metadatas: list[dict] | None = None
    ) -> list[Document]:
        documents = []
        for i, text in enumerate(texts):
            metadata = metadatas[i] if metadatas else {}
            for chunk in self.split_text(text):
                documents.append(Document(content=chunk, metadata=dict(metadata)))
        return documents


def _word_counts(text: str) -> Counter:
    return Counter(w.lower() for w in _WORD_RE.findall(text))


def _cosine_scores(query_vec: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of query_vec against every row of matrix; 0 where a norm is 0."""
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query_vec)
    dots = np.dot(matrix, query_vec)
    return np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)


class LocalMemory:
    """In-process memory store ranked by cosine similarity.

    With an embed function, documents and queries are compared by embedding
    vectors; without one, by word-count vectors over a vocabulary shared by
    every stored document. relevant() returns at most k documents, most
    relevant first, skipping documents with no similarity.
    """

    def __init__(self, *, embed: Embedder | None = None, k: int = DEFAULT_K):
        self.embed = embed
        self.k = k
        self._documents: list[Document] = []
        self._vectors: list[np.ndarray] = []
        self._vocab: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._documents)

    @property
    def documents(self) -> list[Document]:
        return list(self._documents)

    def _count_vector(self, counts: Counter, vocab: dict[str, int]) -> np.ndarray:
        vec = np.zeros(len(vocab))
        for word, n in counts.items():
            vec[vocab[word]] = n
        return vec

    async def add_documents(self, documents: list[Document]) -> None:
        if not documents:
            return
        if self.embed is not None:
            embeddings = await self.embed([d.content for d in documents])
            if len(embeddings) != len(documents):
                raise ValueError(
                    f"embedder returned {len(embeddings)} vectors for {len(documents)} documents"
                )
            vectors = [np.array(e, dtype=float) for e in embeddings]
        else:
            vectors = []
            for d in documents:
                counts = _word_counts(d.content)
                for word in counts:
                    self._vocab.setdefault(word, len(self._vocab))
                vectors.append(self._count_vector(counts, self._vocab))
        self._documents.extend(documents)
        self._vectors.extend(vectors)
        logger.debug("memory: stored %d document(s), total %d", len(documents), len(self))

    def _word_matrix(self, query: str) -> tuple[np.ndarray, np.ndarray]:
        counts = _word_counts(query)
        vocab = dict(self._vocab)
        for word in counts:
            vocab.setdefault(word, len(vocab))
        # Older rows were built over a smaller vocabulary.
        matrix = np.stack([np.pad(v, (0, len(vocab) - len(v))) for v in self._vectors])
        return self._count_vector(counts, vocab), matrix

    async def relevant(self, query: str) -> list[Document]:
        if not self._documents:
            return []
        if self.embed is not None:
            (embedding,) = await self.embed([query])
            query_vec = np.array(embedding, dtype=float)
            matrix = np.stack(self._vectors)
        else:
            query_vec, matrix = self._word_matrix(query)
        scores = _cosine_scores(query_vec, matrix)
        ranked = [int(i) for i in np.argsort(-scores, kind="stable") if scores[i] > 0]
        return [self._documents[i] for i in ranked[: self.k]]

    def clear(self) -> None:
        self._documents.clear()
        self._vectors.clear()
        self._vocab.clear()


def litellm_embedder(model: str, **kwargs) -> Embedder:
    """Build an embed function backed by litellm.aembedding."""

    async def embed(texts: list[str]) -> list[list[float]]:
        import litellm

        litellm.suppress_debug_info = True
        try:
            response = await litellm.aembedding(model=model, input=texts, **kwargs)
        except Exception as e:
            raise AgentError(f"embedding call failed: {e}") from e
        vectors = []
        for item in response.data:
            if isinstance(item, dict):
                vectors.append(item["embedding"])
            else:
                vectors.append(item.embedding)
        return vectors

    return embed
