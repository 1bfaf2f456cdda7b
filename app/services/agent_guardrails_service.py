"""
Agent Guardrails Service

Deterministic checks wrapped around every intelligent-agent turn.

Key Features:
1. Route Inference - Lexical classification of the user text into support,
   billing, exit, commercial or unknown, with a confidence score
2. Reply Sanitization - Removes route markers and blocks refusal/meta replies
3. Slot Extraction - Pulls structured facts (CPF, CEP, phones, plan...) out of
   free text into the agent conversation state
4. Memory Query - Builds the retrieval query for the current turn
"""
import datetime
import logging
import re
import unicodedata
from typing import Any, Dict, List, Optional

from app.schemas.agent import AgentConversationState, AgentRoute, AgentRouteDecision, ReplyGuardResult

logger = logging.getLogger(__name__)

_PUNCTUATION = re.compile(r"[^\w\s]", re.UNICODE)
_WHITESPACE = re.compile(r"\s+")

# Signals are matched against normalized text (lowercase, no accents, no punctuation)
ROUTE_SIGNALS: Dict[AgentRoute, List[str]] = {
    AgentRoute.SUPPORT: [
        "support", "no internet", "internet is down", "internet down", "slow connection", "unstable",
        "router", "modem", "technician", "high ping", "connection drop",
        "suporte", "internet caiu", "sem internet", "instavel", "instabilidade", "lenta", "lentidao",
        "sinal ruim", "wifi ruim", "roteador", "tecnico", "ping alto", "queda de conexao",
    ],
    AgentRoute.BILLING: [
        "billing", "invoice", "bill", "payment", "pay my", "due date", "debt", "overdue", "refund",
        "financeiro", "boleto", "fatura", "segunda via", "2 via", "pagamento", "pagar", "vencimento",
        "debito", "divida", "negociar", "juros", "desconto da fatura",
    ],
    AgentRoute.EXIT: [
        "end chat", "end conversation", "stop talking", "i want to stop", "goodbye", "bye",
        "dont want to continue", "no thanks",
        "encerrar", "finalizar", "cancelar atendimento", "quero parar", "nao quero continuar",
        "nao desejo continuar", "tchau", "adeus", "obrigado mas nao", "obrigada mas nao",
    ],
    AgentRoute.COMMERCIAL: [
        "subscribe", "sign up", "new plan", "plan", "fiber", "new service", "installation", "speed",
        "assinar", "contratar", "plano", "internet fibra", "quero internet", "novo servico",
        "instalacao", "velocidade", "mega", "wifi 6",
    ],
}

EXIT_THRESHOLDS = {
    AgentRoute.EXIT: 0.55,
    AgentRoute.SUPPORT: 0.68,
    AgentRoute.BILLING: 0.68,
}

REDIRECT_MESSAGES = {
    AgentRoute.SUPPORT: "Sure, I'm transferring you to our support team right now.",
    AgentRoute.BILLING: "Alright, I'm transferring you to our billing team right now.",
    AgentRoute.EXIT: "No problem, I'm closing this conversation here.",
}
DEFAULT_FALLBACK_MESSAGE = "Got it. Tell me briefly what you need right now so I can help you."
TOO_SHORT_FALLBACK_MESSAGE = "Got it. Could you give me one more detail so I can help you better?"

# Marker names in either language map to a route
_MARKER_ROUTES = {
    "support": AgentRoute.SUPPORT, "suporte": AgentRoute.SUPPORT,
    "billing": AgentRoute.BILLING, "financeiro": AgentRoute.BILLING,
    "exit": AgentRoute.EXIT, "encerrar": AgentRoute.EXIT,
    "commercial": AgentRoute.COMMERCIAL, "assinatura": AgentRoute.COMMERCIAL,
}
_MARKER_PATTERN = re.compile(r"\b(?:route|rota)\s*[:=]?\s*(" + "|".join(_MARKER_ROUTES) + r")\b")
_MARKER_STRIP_PATTERN = re.compile(r"\[(?:ROUTE|ROTA)\s*:[^\]]+\]", re.IGNORECASE)
_REPLY_ROUTE_PATTERNS = [
    (re.compile(r"transferring you to (our )?support|direcionar .* suporte|encaminhar .* suporte"), AgentRoute.SUPPORT),
    (re.compile(r"transferring you to (our )?billing|direcionar .* financeiro|encaminhar .* financeiro"), AgentRoute.BILLING),
    (re.compile(r"closing this conversation|vou encerrar|atendimento encerrado"), AgentRoute.EXIT),
]

BLOCKED_REPLY_PATTERNS = [
    re.compile(r"i\s+didn'?t\s+have\s+anything\s+to\s+say", re.IGNORECASE),
    re.compile(r"as\s+an?\s+(ai|language\s+model)", re.IGNORECASE),
    re.compile(r"i\s+cannot\s+help\s+with\s+that", re.IGNORECASE),
    re.compile(r"i'?m\s+sorry,?\s+but\s+i\s+can'?t", re.IGNORECASE),
]


def normalize_for_match(text: str) -> str:
    text = unicodedata.normalize("NFD", (text or "").lower())
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = _PUNCTUATION.sub(" ", text).replace("_", " ")
    return _WHITESPACE.sub(" ", text).strip()


def _contains_signal(normalized: str, signal: str) -> bool:
    return re.search(r"\b" + re.escape(signal) + r"\b", normalized) is not None


def _confidence(count: int) -> float:
    return min(0.98, 0.42 + 0.17 * count + (0.12 if count >= 2 else 0.0))


def infer_route(text: str) -> AgentRouteDecision:
    """Lexical route inference; the highest signal count wins and ties are unknown."""
    normalized = normalize_for_match(text)
    if not normalized:
        return AgentRouteDecision(route=AgentRoute.COMMERCIAL, confidence=0.35)

    scored = []
    for route, signals in ROUTE_SIGNALS.items():
        matched = [signal for signal in signals if _contains_signal(normalized, signal)]
        scored.append((route, len(matched), matched))
    scored.sort(key=lambda entry: entry[1], reverse=True)

    best_route, best_count, best_matched = scored[0]
    if best_count == 0:
        return AgentRouteDecision(route=AgentRoute.UNKNOWN, confidence=0.0)

    runner_up = scored[1]
    if runner_up[1] == best_count:
        return AgentRouteDecision(
            route=AgentRoute.UNKNOWN,
            confidence=max(0.0, _confidence(best_count) - 0.2),
            matched_signals=best_matched + runner_up[2],
        )

    confidence = _confidence(best_count)
    return AgentRouteDecision(
        route=best_route,
        confidence=confidence,
        matched_signals=best_matched,
        should_exit_flow=should_exit(best_route, confidence),
    )


def should_exit(route: AgentRoute, confidence: float) -> bool:
    threshold = EXIT_THRESHOLDS.get(route)
    return threshold is not None and confidence >= threshold


def build_redirect_message(route: AgentRoute) -> str:
    return REDIRECT_MESSAGES.get(route, "Great, let's continue with your request.")


def detect_route_in_reply(reply: str) -> AgentRoute:
    """Finds an explicit route marker (``[ROUTE: support]``) or handoff sentence in a raw reply."""
    normalized = normalize_for_match(reply)
    if not normalized:
        return AgentRoute.UNKNOWN
    marker = _MARKER_PATTERN.search(normalized)
    if marker:
        return _MARKER_ROUTES[marker.group(1)]
    for pattern, route in _REPLY_ROUTE_PATTERNS:
        if pattern.search(normalized):
            return route
    return AgentRoute.UNKNOWN


def sanitize_reply(raw_reply: Optional[str], preferred_route: Optional[AgentRoute] = None) -> ReplyGuardResult:
    cleaned = _MARKER_STRIP_PATTERN.sub("", str(raw_reply or ""))
    cleaned = cleaned.replace("\r\n", "\n")
    cleaned = re.sub(r"[ \t]+\n", "\n", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned).strip()

    blocked = any(pattern.search(cleaned) for pattern in BLOCKED_REPLY_PATTERNS)
    if blocked or not cleaned:
        reason = "blocked" if blocked else "empty"
        logger.warning("Agent reply replaced by fallback (%s)", reason)
        if preferred_route in REDIRECT_MESSAGES:
            return ReplyGuardResult(text=REDIRECT_MESSAGES[preferred_route], changed=True, reason=reason)
        return ReplyGuardResult(text=DEFAULT_FALLBACK_MESSAGE, changed=True, reason=reason)

    if len(cleaned) < 2:
        return ReplyGuardResult(text=TOO_SHORT_FALLBACK_MESSAGE, changed=True, reason="too_short")

    return ReplyGuardResult(text=cleaned, changed=cleaned != (raw_reply or ""))


# --- Slot extraction -------------------------------------------------------

_CPF_PATTERN = re.compile(r"\b(\d{3}\.?\d{3}\.?\d{3}-?\d{2})\b")
_CEP_PATTERN = re.compile(r"\b(\d{5}-?\d{3})\b")
_BILLING_DAY_PATTERN = re.compile(r"\b(?:vencimento|dia|day|due)\b\D{0,12}\b(5|10|15|20|25)\b")
_LAT_LNG_PATTERN = re.compile(r"(-?\d{1,3}\.\d{4,})\s*,\s*(-?\d{1,3}\.\d{4,})")
_ADDRESS_PATTERN = re.compile(
    r"\b(?:rua|avenida|av|travessa|quadra|lote|condominio|bloco|casa|apartamento|street|st|avenue|ave|road|apt)\b",
    re.IGNORECASE,
)
_PLAN_PATTERN = re.compile(r"\b(\d{2,4}\s*(?:mega|mb|gb))\b", re.IGNORECASE)
_PHONE_PATTERN = re.compile(r"\+?\d[\d\s().-]{7,}\d")


def _digits(text: str) -> str:
    return re.sub(r"\D", "", text)


def extract_slots(message: str) -> Dict[str, Any]:
    text = str(message or "")
    normalized = normalize_for_match(text)
    slots: Dict[str, Any] = {}

    cpf = _CPF_PATTERN.search(text)
    if cpf:
        slots["cpf"] = _digits(cpf.group(1))

    cep = _CEP_PATTERN.search(text)
    if cep:
        slots["cep"] = _digits(cep.group(1))

    billing_day = _BILLING_DAY_PATTERN.search(normalized)
    if billing_day:
        slots["billing_day"] = billing_day.group(1)

    if re.search(r"\b(manha|morning)\b", normalized):
        slots["install_shift"] = "morning"
    if re.search(r"\b(tarde|afternoon)\b", normalized):
        slots["install_shift"] = "afternoon"

    location = _LAT_LNG_PATTERN.search(text)
    if location:
        slots["latitude"] = float(location.group(1))
        slots["longitude"] = float(location.group(2))

    if _ADDRESS_PATTERN.search(text) and len(text) <= 220:
        slots["address"] = text.strip()

    plan = _PLAN_PATTERN.search(text)
    if plan:
        slots["plan"] = _WHITESPACE.sub(" ", plan.group(1).upper())

    phones = []
    for candidate in _PHONE_PATTERN.findall(text):
        digits = _digits(candidate)
        if 10 <= len(digits) <= 13 and digits not in phones and digits != slots.get("cpf"):
            phones.append(digits)
    if phones:
        slots["phone_primary"] = phones[0]
    if len(phones) > 1:
        slots["phone_secondary"] = phones[1]

    return slots


def merge_agent_state(previous: Any, user_message: str, route: Optional[AgentRoute] = None) -> AgentConversationState:
    """Folds the slots found in this message into the previous state; new values win."""
    try:
        state = AgentConversationState.model_validate(previous) if isinstance(previous, dict) else AgentConversationState()
    except ValueError:
        logger.warning("Discarding malformed agent state: %s", previous)
        state = AgentConversationState()

    slots = dict(state.slots)
    for key, value in extract_slots(user_message).items():
        if value is not None and str(value).strip():
            slots[key] = value

    return AgentConversationState(
        last_route=route if route and route != AgentRoute.UNKNOWN else state.last_route,
        slots=slots,
        updated_at=datetime.datetime.now(datetime.timezone.utc).isoformat(),
    )


_STATE_LABELS = [
    ("plan", "Plan of interest"),
    ("billing_day", "Billing day"),
    ("install_shift", "Installation shift"),
    ("cpf", "CPF provided"),
    ("cep", "CEP provided"),
    ("phone_primary", "Primary phone"),
    ("phone_secondary", "Secondary phone"),
    ("address", "Address provided"),
]


def build_state_prompt_fragment(state: Optional[AgentConversationState]) -> str:
    if state is None:
        return ""
    lines = []
    if state.last_route:
        lines.append(f"Last inferred route: {state.last_route.value}")
    for key, label in _STATE_LABELS:
        if state.slots.get(key):
            lines.append(f"{label}: {state.slots[key]}")
    if state.slots.get("latitude") is not None and state.slots.get("longitude") is not None:
        lines.append(f"Shared location: {state.slots['latitude']}, {state.slots['longitude']}")
    if not lines:
        return ""
    return "Current conversation state (structured flow memory):\n- " + "\n- ".join(lines)


def build_memory_query(user_message: str, history: List[dict], state: Optional[AgentConversationState] = None) -> str:
    """Short replies ("yes", "the second one") are paired with the question they answer."""
    user_message = str(user_message or "").strip()
    last_assistant = next(
        (m for m in reversed(history or []) if m.get("role") == "assistant" and str(m.get("content") or "").strip()),
        None,
    )
    fragment = build_state_prompt_fragment(state)
    if user_message and len(user_message) <= 24 and last_assistant:
        query = f"Previous agent question: {last_assistant['content']}\nCurrent user reply: {user_message}"
    else:
        query = user_message
    return f"{query}\n{fragment}" if fragment else query
