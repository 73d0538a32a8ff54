"""
Embedding Providers - Unified Interface for Text Embeddings

The feature extractor compares candidate and job free text through
embeddings. This module hides where those embeddings come from.

Key Classes:
    - EmbeddingProvider: Protocol every provider satisfies
    - OpenAIEmbeddings: OpenAI API provider
    - LocalEmbeddings: Local sentence-transformers models
    - MockEmbeddingProvider: Deterministic hash-seeded vectors (default)

Every provider returns unit-length vectors, or an all-zero vector for
empty text, so cosine similarity and Euclidean distance stay in
comparable ranges across providers.
"""

import asyncio
import hashlib
import logging
from typing import List, Optional, Dict, Any, Protocol, runtime_checkable

import numpy as np

logger = logging.getLogger(__name__)


MODEL_DIMENSIONS: Dict[str, int] = {
    # OpenAI models
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
    # Local models
    "nomic-ai/nomic-embed-text-v1.5": 768,
    "BAAI/bge-large-en-v1.5": 1024,
    "sentence-transformers/all-MiniLM-L6-v2": 384,
    "sentence-transformers/all-mpnet-base-v2": 768,
}


def _unit(vector: np.ndarray) -> List[float]:
    norm = np.linalg.norm(vector)
    if norm == 0:
        return [0.0] * len(vector)
    return (vector / norm).tolist()


@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Protocol defining the embedding provider interface.

    All embedding providers must implement:
    - embed(): Single text to embedding
    - embed_batch(): Multiple texts to embeddings
    - dimensions: Embedding vector size
    - name: Short label used in metrics
    """

    @property
    def name(self) -> str:
        ...

    @property
    def dimensions(self) -> int:
        """Return the embedding vector dimensions."""
        ...

    async def embed(self, text: str) -> List[float]:
        """Embed a single text string."""
        ...

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed multiple text strings efficiently."""
        ...


class OpenAIEmbeddings:
    """
    OpenAI API embeddings provider.

    Attributes:
        model: OpenAI embedding model name
        api_key: OpenAI API key
        timeout: Per-request timeout in seconds

    Example:
        >>> provider = OpenAIEmbeddings(api_key="sk-...")
        >>> embedding = await provider.embed("Python developer")
    """

    name = "openai"

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        timeout: float = 10.0
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self._client = None

    def _get_client(self):
        """Get or create async OpenAI client."""
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                timeout=self.timeout,
                max_retries=0,
            )
        return self._client

    @property
    def dimensions(self) -> int:
        return MODEL_DIMENSIONS.get(self.model, 1536)

    async def embed(self, text: str) -> List[float]:
        text = text.replace("\n", " ").strip()
        if not text:
            return [0.0] * self.dimensions

        client = self._get_client()
        response = await client.embeddings.create(
            input=[text],
            model=self.model,
        )
        return response.data[0].embedding

    async def embed_batch(
        self,
        texts: List[str],
        batch_size: int = 100
    ) -> List[List[float]]:
        """
        Embed multiple texts with automatic batching.

        Empty texts get zero vectors without an API call.

        Args:
            texts: List of texts to embed
            batch_size: Maximum texts per API call (default 100)

        Returns:
            List of embedding vectors in same order as input
        """
        cleaned_texts = [t.replace("\n", " ").strip() for t in texts]

        non_empty_indices = [i for i, t in enumerate(cleaned_texts) if t]
        non_empty_texts = [cleaned_texts[i] for i in non_empty_indices]

        if not non_empty_texts:
            return [[0.0] * self.dimensions for _ in texts]

        client = self._get_client()

        all_embeddings = []
        for i in range(0, len(non_empty_texts), batch_size):
            batch = non_empty_texts[i:i + batch_size]
            response = await client.embeddings.create(
                input=batch,
                model=self.model,
            )
            all_embeddings.extend([d.embedding for d in response.data])

        result = [[0.0] * self.dimensions for _ in texts]
        for idx, emb in zip(non_empty_indices, all_embeddings):
            result[idx] = emb

        return result


class LocalEmbeddings:
    """
    Local embeddings using sentence-transformers.

    Runs embedding models locally without API calls. Model loading is lazy
    by default; if the package or model is unavailable the provider returns
    zero vectors and logs a warning.

    Example:
        >>> provider = LocalEmbeddings()
        >>> embedding = await provider.embed("Python developer")
    """

    name = "local"

    def __init__(
        self,
        model_name: str = "sentence-transformers/all-MiniLM-L6-v2",
        lazy_load: bool = True
    ) -> None:
        self.model_name = model_name
        self._model = None
        self._lazy_load = lazy_load

        if not lazy_load:
            self._load_model()

    def _load_model(self) -> None:
        """Load the embedding model."""
        if self._model is not None:
            return

        try:
            from sentence_transformers import SentenceTransformer
            logger.info(f"Loading embedding model: {self.model_name}")
            self._model = SentenceTransformer(self.model_name)
            logger.info("Embedding model loaded successfully")
        except ImportError:
            logger.warning(
                "sentence-transformers not installed. "
                "Install with: pip install talentml[local]"
            )
            self._model = None
        except Exception as e:
            logger.error(f"Failed to load embedding model: {e}")
            self._model = None

    @property
    def model(self):
        """Get model, loading lazily if needed."""
        if self._model is None and self._lazy_load:
            self._load_model()
        return self._model

    @property
    def dimensions(self) -> int:
        return MODEL_DIMENSIONS.get(self.model_name, 384)

    async def embed(self, text: str) -> List[float]:
        text = text.strip()
        if not text:
            return [0.0] * self.dimensions

        if self.model is None:
            logger.warning("Model not loaded, returning zero vector")
            return [0.0] * self.dimensions

        loop = asyncio.get_running_loop()
        embedding = await loop.run_in_executor(
            None, lambda: self.model.encode(text, normalize_embeddings=True).tolist()
        )
        return embedding

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        cleaned_texts = [t.strip() for t in texts]

        if all(not t for t in cleaned_texts):
            return [[0.0] * self.dimensions for _ in texts]

        if self.model is None:
            logger.warning("Model not loaded, returning zero vectors")
            return [[0.0] * self.dimensions for _ in texts]

        loop = asyncio.get_running_loop()
        embeddings = await loop.run_in_executor(
            None,
            lambda: self.model.encode(cleaned_texts, normalize_embeddings=True).tolist()
        )

        for i, text in enumerate(cleaned_texts):
            if not text:
                embeddings[i] = [0.0] * self.dimensions

        return embeddings


class MockEmbeddingProvider:
    """
    Deterministic embedding provider.

    Seeds a numpy generator from a SHA-256 of the text, so the same text
    always produces the same unit vector on every machine and run. Used by
    default and in tests; no network or model download involved.
    """

    name = "mock"

    def __init__(self, dimensions: int = 64) -> None:
        self._dimensions = dimensions

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def _text_to_embedding(self, text: str) -> List[float]:
        text = text.strip()
        if not text:
            return [0.0] * self._dimensions

        seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "big")
        rng = np.random.default_rng(seed)
        return _unit(rng.uniform(-1.0, 1.0, self._dimensions))

    async def embed(self, text: str) -> List[float]:
        return self._text_to_embedding(text)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return [self._text_to_embedding(t) for t in texts]


def get_embedding_provider(
    provider_name: str = "mock",
    api_key: Optional[str] = None,
    model_name: Optional[str] = None,
    lazy_load: bool = True,
    **kwargs: Any
) -> EmbeddingProvider:
    """
    Factory function to create embedding provider instances.

    Args:
        provider_name: Provider type - "openai", "local", or "mock"
        api_key: API key for cloud providers (required for OpenAI)
        model_name: Optional model name override
        lazy_load: For local models, defer loading until first use
        **kwargs: dimensions (mock), timeout (openai)

    Raises:
        ValueError: If provider is unknown or required args missing
    """
    provider_name = provider_name.lower()

    if provider_name == "openai":
        if not api_key:
            raise ValueError("OpenAI embeddings require api_key")
        return OpenAIEmbeddings(
            api_key=api_key,
            model=model_name or "text-embedding-3-small",
            timeout=kwargs.get("timeout", 10.0),
        )

    elif provider_name == "local":
        return LocalEmbeddings(
            model_name=model_name or "sentence-transformers/all-MiniLM-L6-v2",
            lazy_load=lazy_load
        )

    elif provider_name == "mock":
        return MockEmbeddingProvider(dimensions=kwargs.get("dimensions", 64))

    else:
        raise ValueError(
            f"Unknown embedding provider: {provider_name}. "
            f"Supported: openai, local, mock"
        )
