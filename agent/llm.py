from langchain_openai import ChatOpenAI
from langchain_anthropic import ChatAnthropic
from services.config import settings
from services.errors import ConfigurationError
import structlog

logger = structlog.get_logger()

# OpenRouter API base URL
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


def get_llm(
    provider: str = None,
    model: str = None,
    temperature: float = None
):
    """
    Get an LLM instance based on provider and model configuration.

    Args:
        provider: LLM provider ('openai', 'anthropic' or 'openrouter')
        model: Model name
        temperature: Temperature setting (0-2)

    Returns:
        LLM instance (ChatOpenAI or ChatAnthropic)

    Raises:
        ConfigurationError: unknown provider or missing API key
    """
    provider = provider or settings.llm_provider
    model = model or settings.llm_model
    temperature = temperature if temperature is not None else 0.0

    logger.info(
        "Initializing LLM",
        provider=provider,
        model=model,
        temperature=temperature
    )

    if provider == 'openai':
        if not settings.openai_api_key:
            raise ConfigurationError("OpenAI API key not configured")

        return ChatOpenAI(
            model=model,
            api_key=settings.openai_api_key,
            temperature=temperature,
            timeout=60,
            max_retries=2
        )

    elif provider == 'anthropic':
        if not settings.anthropic_api_key:
            raise ConfigurationError("Anthropic API key not configured")

        return ChatAnthropic(
            model=model,
            api_key=settings.anthropic_api_key,
            temperature=temperature,
            timeout=60,
            max_retries=2
        )

    elif provider == 'openrouter':
        if not settings.openrouter_api_key:
            raise ConfigurationError("OpenRouter API key not configured")

        # OpenRouter uses OpenAI-compatible API
        return ChatOpenAI(
            model=model,
            api_key=settings.openrouter_api_key,
            base_url=OPENROUTER_BASE_URL,
            temperature=temperature,
            timeout=60,
            max_retries=2,
            default_headers={
                "X-Title": "Semantic Catalog Runtime"
            }
        )

    logger.error("Unsupported LLM provider", provider=provider)
    raise ConfigurationError(f"Unsupported LLM provider: {provider}")


def get_summary_llm():
    """Model used for table summaries; falls back to the main model."""
    return get_llm(model=settings.summary_model or settings.llm_model, temperature=0.2)
