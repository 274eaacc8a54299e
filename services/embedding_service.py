from typing import List
import openai
import structlog

from services.config import settings
from services.errors import ConfigurationError

logger = structlog.get_logger()


class EmbeddingService:
    def __init__(self, api_key: str = None, model: str = None):
        self.api_key = settings.openai_api_key if api_key is None else api_key
        self.model = model or settings.embedding_model
        self.dimension = settings.embedding_dimension
        self._client = None

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    @property
    def client(self) -> openai.AsyncOpenAI:
        if not self.available:
            raise ConfigurationError("OpenAI API key not configured for embeddings")
        if self._client is None:
            self._client = openai.AsyncOpenAI(api_key=self.api_key, max_retries=1)
        return self._client

    async def generate_embeddings(
        self,
        texts: List[str],
        model: str = None
    ) -> List[List[float]]:
        if not texts:
            return []

        model = model or self.model

        try:
            response = await self.client.embeddings.create(
                model=model,
                input=texts,
                encoding_format="float"
            )

            embeddings = [item.embedding for item in sorted(response.data, key=lambda d: d.index)]

            logger.info(
                "Generated embeddings",
                count=len(texts),
                model=model,
                dimension=len(embeddings[0]) if embeddings else 0
            )

            return embeddings

        except Exception as e:
            logger.error("Embedding generation failed", count=len(texts), error=str(e))
            raise

    async def generate_single_embedding(self, text: str, model: str = None) -> List[float]:
        embeddings = await self.generate_embeddings([text], model)
        return embeddings[0] if embeddings else []


embedding_service = EmbeddingService()
