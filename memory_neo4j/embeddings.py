"""Embedding generation for vector similarity search."""

import asyncio
import logging
from threading import Lock
from typing import List, Optional

import httpx

from .config import EmbeddingConfig, context_length_for_model

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_URL = "http://localhost:11434"
# Rough token estimate used to keep inputs inside the model context window.
CHARS_PER_TOKEN = 4


class EmbeddingProvider:
    """
    Unified embedding interface over three backends.

    - ``openai``: OpenAI (or compatible) embeddings endpoint via ``AsyncOpenAI``
    - ``ollama``: a local Ollama server's ``/api/embed``
    - ``local``: an in-process sentence-transformers model

    Clients and models are created lazily on first use.
    """

    def __init__(self, config: EmbeddingConfig):
        self.provider = config.provider
        self.model = config.model
        self.api_key = config.api_key
        self.base_url = config.base_url
        self.max_chars = context_length_for_model(config.model) * CHARS_PER_TOKEN
        self._client = None
        self._http: Optional[httpx.AsyncClient] = None
        self._model = None
        self._model_lock = Lock()

    def _init_openai(self):
        """Initialize OpenAI client for embeddings."""
        from openai import AsyncOpenAI
        kwargs = {"api_key": self.api_key}
        if self.base_url:
            kwargs["base_url"] = self.base_url
        self._client = AsyncOpenAI(**kwargs)

    def _init_ollama(self):
        self._http = httpx.AsyncClient(
            base_url=(self.base_url or DEFAULT_OLLAMA_URL).rstrip("/"),
            timeout=60.0,
        )

    def _init_local(self):
        """Initialize local embedding model."""
        from sentence_transformers import SentenceTransformer
        self._model = SentenceTransformer(self.model, trust_remote_code=True)

    def _truncate(self, text: str) -> str:
        if len(text) <= self.max_chars:
            return text
        logger.debug(f"Truncating embedding input from {len(text)} to {self.max_chars} chars")
        return text[:self.max_chars]

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for a list of texts, preserving order.

        Args:
            texts: Texts to embed

        Returns:
            One vector per input text
        """
        if not texts:
            return []
        texts = [self._truncate(t) for t in texts]

        if self.provider == "ollama":
            return await self._embed_ollama(texts)
        if self.provider == "local":
            return await asyncio.to_thread(self._embed_local, texts)
        return await self._embed_openai(texts)

    async def embed(self, text: str) -> List[float]:
        """Convenience method for single text embedding."""
        return (await self.embed_batch([text]))[0]

    async def _embed_openai(self, texts: List[str]) -> List[List[float]]:
        if self._client is None:
            self._init_openai()
        response = await self._client.embeddings.create(model=self.model, input=texts)
        return [item.embedding for item in sorted(response.data, key=lambda d: d.index)]

    async def _embed_ollama(self, texts: List[str]) -> List[List[float]]:
        if self._http is None:
            self._init_ollama()
        response = await self._http.post("/api/embed", json={"model": self.model, "input": texts})
        response.raise_for_status()
        return response.json()["embeddings"]

    def _embed_local(self, texts: List[str]) -> List[List[float]]:
        """Runs in a worker thread; loading and encoding both block."""
        if self._model is None:
            with self._model_lock:
                if self._model is None:
                    self._init_local()
        embeddings = self._model.encode(texts, convert_to_numpy=True)
        return embeddings.tolist()

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None
        if self._client is not None:
            await self._client.close()
            self._client = None
