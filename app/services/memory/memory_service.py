"""
Agent long-term memory: retrieval scoring and post-turn consolidation.

Retrieval blends lexical relevance, importance and exponential recency with
weights per memory type, then fills per-type caps in score order.
Consolidation extracts candidate memories from a turn (LLM compiler with a
regex fallback), filters them and writes them to the store.
"""
import datetime
import json
import logging
import math
import re
from typing import List, Optional

from app.schemas.memory import (
    MemoryCandidate,
    MemoryContext,
    MemoryItem,
    MemoryQuery,
    MemoryScope,
    MemorySettings,
    MemoryType,
    MemoryWrite,
)
from app.services.memory.base import MemoryStore, normalize_importance, utcnow
from app.services.flow_variables import get_path
from app.services.llm_tool_service import GenerationRequest
from app.services.memory.embedding_service import generate_embedding

logger = logging.getLogger(__name__)

STOPWORDS = {
    'a', 'o', 'os', 'as', 'de', 'do', 'da', 'dos', 'das', 'e', 'ou', 'em', 'no',
    'na', 'nos', 'nas', 'para', 'por', 'com', 'que', 'um', 'uma', 'uns', 'umas',
    'the', 'and', 'or', 'to', 'of', 'in', 'on', 'for', 'with', 'is', 'are', 'be',
}

SENSITIVE_PATTERNS = [
    re.compile(r"password", re.IGNORECASE),
    re.compile(r"senha", re.IGNORECASE),
    re.compile(r"api[-_ ]?key", re.IGNORECASE),
    re.compile(r"token", re.IGNORECASE),
    re.compile(r"secret", re.IGNORECASE),
    re.compile(r"cvv", re.IGNORECASE),
    re.compile(r"credit card", re.IGNORECASE),
    re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),  # SSN
    re.compile(r"\b\d{3}\.\d{3}\.\d{3}-\d{2}\b"),  # CPF
    re.compile(r"\b\d{4}[ -]\d{4}[ -]\d{4}[ -]\d{1,7}\b|\b\d{16}\b"),  # card numbers
]

TYPE_WEIGHTS = {
    MemoryType.SEMANTIC: (0.5, 0.4, 0.1),
    MemoryType.PROCEDURAL: (0.6, 0.3, 0.1),
    MemoryType.EPISODIC: (0.4, 0.2, 0.4),
}
HALF_LIFE_DAYS = {MemoryType.EPISODIC: 7}
DEFAULT_HALF_LIFE_DAYS = 30
UNDATED_RECENCY = 0.35

SELECTION_CAPS = {MemoryType.SEMANTIC: 6, MemoryType.EPISODIC: 4, MemoryType.PROCEDURAL: 3}
SUMMARY_MAX_CHARS = 1600
CONTENT_MAX_CHARS = 500
EPISODE_MAX_CHARS = 220

NAME_PATTERN = re.compile(r"\b(meu nome (?:e|é)|me chamo|i am|my name is)\s+([^.,;]+)", re.IGNORECASE)
PREFERENCE_PATTERN = re.compile(
    r"\b(prefiro|gosto de|nao gosto de|não gosto de|i like|i prefer|i do not like)\s+([^.,;]+)", re.IGNORECASE
)

COMPILER_PROMPT = """You are a high-precision memory compiler for a conversational agent.
Extract only memory that improves future turns: durable user profile data, business slots,
constraints and stable procedures. Keep each item atomic and short. Ignore greetings and
small talk. Never store secrets: passwords, tokens, API keys, CVV, card numbers, documents.
Use "semantic" for durable facts, "episodic" for relevant recent events and "procedural"
for stable instructions. importance is 0..1. ttl_days is optional.

Answer with JSON: {"items": [{"type": "...", "content": "...", "importance": 0.0, "ttl_days": null, "tags": []}]}
Return {"items": []} when nothing is worth remembering."""


def normalize_text(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def truncate_text(text: str, max_chars: int = 360) -> str:
    return f"{text[:max_chars].strip()}..." if len(text) > max_chars else text


def tokenize(text: str) -> List[str]:
    cleaned = re.sub(r"[^\w\s]", " ", normalize_text(text).lower())
    return [token for token in cleaned.split() if len(token) > 2 and token not in STOPWORDS]


def jaccard_similarity(a: List[str], b: List[str]) -> float:
    if not a or not b:
        return 0.0
    set_a, set_b = set(a), set(b)
    intersection = len(set_a & set_b)
    union = len(set_a | set_b)
    return intersection / union if union else 0.0


def recency_score(created_at: Optional[datetime.datetime], half_life_days: float, now: datetime.datetime = None) -> float:
    if created_at is None:
        return UNDATED_RECENCY
    now = now or utcnow()
    if created_at.tzinfo is not None:
        created_at = created_at.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    age_days = max(0.0, (now - created_at).total_seconds() / 86400.0)
    return math.exp(-age_days / max(1.0, half_life_days))


def score_memory_item(item: MemoryItem, query: str, now: datetime.datetime = None) -> float:
    relevance = jaccard_similarity(tokenize(query), tokenize(item.content))
    importance = normalize_importance(item.importance)
    recency = recency_score(item.created_at, HALF_LIFE_DAYS.get(item.type, DEFAULT_HALF_LIFE_DAYS), now)
    w_relevance, w_importance, w_recency = TYPE_WEIGHTS.get(item.type, TYPE_WEIGHTS[MemoryType.EPISODIC])
    return relevance * w_relevance + importance * w_importance + recency * w_recency


def build_summary(facts: List[MemoryItem], episodes: List[MemoryItem], procedures: List[MemoryItem]) -> str:
    sections = []
    for title, items in (("Facts", facts), ("Episodes", episodes), ("Procedures", procedures)):
        if items:
            sections.append(f"{title}:\n- " + "\n- ".join(item.content for item in items))
    return "\n\n".join(sections)[:SUMMARY_MAX_CHARS]


async def load_memory_context(store: MemoryStore, config: MemorySettings, workspace_id: str, agent_id: str,
                              scope_key: str, query: str, query_embedding: List[float] = None,
                              similarity_threshold: float = None) -> MemoryContext:
    await store.delete_expired()

    items = await store.query(MemoryQuery(
        workspace_id=workspace_id,
        agent_id=agent_id,
        scope=config.scope,
        scope_key=scope_key,
        limit=min(config.max_items * 3, 200),
        min_importance=config.min_importance,
        embedding=query_embedding,
        similarity_threshold=similarity_threshold if query_embedding else None,
    ))

    now = utcnow()
    ranked = sorted(items, key=lambda item: score_memory_item(item, query, now), reverse=True)
    selected = {memory_type: [] for memory_type in SELECTION_CAPS}
    for item in ranked:
        bucket = selected.get(item.type)
        if bucket is not None and len(bucket) < SELECTION_CAPS[item.type]:
            bucket.append(item)
        if all(len(selected[t]) >= cap for t, cap in SELECTION_CAPS.items()):
            break

    facts = selected[MemoryType.SEMANTIC]
    episodes = selected[MemoryType.EPISODIC]
    procedures = selected[MemoryType.PROCEDURAL]
    touched = [item.id for item in facts + episodes + procedures]
    if touched:
        await store.touch(touched)

    return MemoryContext(
        facts=facts,
        episodes=episodes,
        procedures=procedures,
        summary=build_summary(facts, episodes, procedures),
    )


def heuristic_memory_candidates(user_message: str, assistant_message: str) -> List[MemoryCandidate]:
    candidates = []
    name_match = NAME_PATTERN.search(user_message or "")
    if name_match and name_match.group(2).strip():
        candidates.append(MemoryCandidate(
            type=MemoryType.SEMANTIC, content=f"User name: {name_match.group(2).strip()}",
            importance=0.85, tags=["identity"],
        ))

    preference_match = PREFERENCE_PATTERN.search(user_message or "")
    if preference_match and preference_match.group(2).strip():
        candidates.append(MemoryCandidate(
            type=MemoryType.SEMANTIC,
            content=f"Preference: {preference_match.group(1)} {preference_match.group(2).strip()}",
            importance=0.7, tags=["preference"],
        ))

    episode = truncate_text(f"{normalize_text(user_message)} | {normalize_text(assistant_message)}", EPISODE_MAX_CHARS)
    if episode.strip(" |"):
        candidates.append(MemoryCandidate(
            type=MemoryType.EPISODIC, content=episode, importance=0.25, ttl_days=7, tags=["episode"],
        ))
    return candidates


async def compile_memory_candidates(llm_service, model: Optional[str], user_message: str,
                                    assistant_message: str, system_prompt: str = None) -> List[MemoryCandidate]:
    """LLM-backed extraction; any failure falls back to the regex heuristics."""
    if llm_service is not None:
        try:
            result = await llm_service.generate(GenerationRequest(
                model=model,
                system_prompt=COMPILER_PROMPT,
                messages=[{
                    "role": "user",
                    "content": f"System: {system_prompt or ''}\nUser: {user_message}\nAssistant: {assistant_message}",
                }],
                temperature=0,
                json_output=True,
            ))
            payload = json.loads(result.text or "{}")
            items = payload.get("items") if isinstance(payload, dict) else None
            if items:
                return [
                    MemoryCandidate(
                        type=item.get("type"),
                        content=normalize_text(str(item.get("content", ""))),
                        importance=normalize_importance(item.get("importance")),
                        ttl_days=item.get("ttl_days"),
                        tags=item.get("tags") or [],
                    )
                    for item in items if isinstance(item, dict)
                ]
        except Exception as e:
            logger.warning("Memory compiler failed, using heuristic fallback: %s", e)
    return heuristic_memory_candidates(user_message, assistant_message)


def is_sensitive(content: str) -> bool:
    return any(pattern.search(content) for pattern in SENSITIVE_PATTERNS)


def filter_candidates(candidates: List[MemoryCandidate], min_importance: float) -> List[MemoryCandidate]:
    deduplicated = {}
    for candidate in candidates:
        content = normalize_text(candidate.content)
        if not content:
            continue
        importance = normalize_importance(candidate.importance)
        if importance < min_importance or is_sensitive(content):
            continue
        key = (candidate.type, content.lower())
        existing = deduplicated.get(key)
        if existing is None or existing.importance < importance:
            deduplicated[key] = candidate.model_copy(update={"content": content, "importance": importance})
    return list(deduplicated.values())


def resolve_expiry(candidate: MemoryCandidate, config: MemorySettings, now: datetime.datetime = None):
    now = now or utcnow()
    if candidate.ttl_days is not None:
        return now + datetime.timedelta(days=candidate.ttl_days)
    if candidate.type == MemoryType.EPISODIC:
        return now + datetime.timedelta(days=config.retention_days)
    return None


async def record_memory(store: MemoryStore, config: MemorySettings, runtime, workspace_id: str, agent_id: str,
                        scope_key: str, user_message: str, assistant_message: str,
                        system_prompt: str = None, model: str = None, llm_service=None) -> int:
    """Extracts, filters, embeds and stores the memories of one turn. Returns the number written."""
    candidates = await compile_memory_candidates(llm_service, model, user_message, assistant_message, system_prompt)
    filtered = filter_candidates(candidates, config.min_importance)
    if not filtered:
        return 0

    writes = []
    for candidate in filtered:
        content = truncate_text(candidate.content, CONTENT_MAX_CHARS)
        embedding = None
        if config.embeddings_enabled:
            embedding = await generate_embedding(runtime, content, config.embedding_model, candidate.type)
        writes.append(MemoryWrite(
            workspace_id=workspace_id,
            agent_id=agent_id,
            scope=config.scope,
            scope_key=scope_key,
            type=candidate.type,
            content=content,
            importance=candidate.importance,
            tags=candidate.tags or None,
            embedding=embedding,
            expires_at=resolve_expiry(candidate, config),
            source="compiler",
        ))
    await store.put(writes)
    logger.info("Recorded %s memories for agent '%s' (%s:%s)", len(writes), agent_id, config.scope.value, scope_key)
    return len(writes)


def resolve_scope_key(config: MemorySettings, variables: dict, session_id: str, workspace_id: str) -> str:
    """Concrete partition value for the configured scope."""
    if config.scope_key_variable:
        value = get_path(variables, config.scope_key_variable)
        if value not in (None, ""):
            return str(value)
    if config.scope == MemoryScope.WORKSPACE:
        return workspace_id
    if config.scope == MemoryScope.USER:
        for variable in ("contact_phone", "whatsapp_sender_jid", "chatwoot_contact_id", "dialogy_contact_id"):
            value = variables.get(variable)
            if value not in (None, ""):
                return str(value)
    return session_id
