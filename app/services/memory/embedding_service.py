import logging
from typing import List, Optional

logger = logging.getLogger(__name__)

OPENAI_PREFIX = "openai-"
HYBRID_POLICY = "hybrid"


def resolve_embedding_model(model: Optional[str], memory_type: Optional[str], settings) -> Optional[str]:
    """The ``hybrid`` policy routes episodic content to one model and everything else to another."""
    if not model:
        return None
    if model == HYBRID_POLICY:
        memory_type = getattr(memory_type, "value", memory_type)
        if memory_type == "episodic":
            return settings.MEMORY_EMBEDDING_MODEL_EPISODIC
        return settings.MEMORY_EMBEDDING_MODEL_SEMANTIC
    return model


async def generate_embedding(runtime, text: str, model: Optional[str], memory_type: Optional[str] = None) -> Optional[List[float]]:
    """
    Embeds text with the configured model, or returns None when embeddings are
    unavailable (no model, no API key, unsupported model, provider failure).
    """
    resolved = resolve_embedding_model(model, memory_type, runtime.settings)
    if not resolved or not text or not text.strip():
        return None
    if not resolved.startswith(OPENAI_PREFIX):
        logger.warning("Unsupported embedding model '%s'", resolved)
        return None

    client = runtime.get_llm_client()
    if client is None:
        logger.debug("No API key configured; skipping embedding generation")
        return None
    try:
        response = await client.embeddings.create(
            model=resolved[len(OPENAI_PREFIX):],
            input=text,
            dimensions=runtime.settings.MEMORY_EMBEDDING_DIMENSIONS,
        )
    except Exception as e:
        logger.warning("Embedding generation failed with '%s': %s", resolved, e)
        return None
    return list(response.data[0].embedding)
