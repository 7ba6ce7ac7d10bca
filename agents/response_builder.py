"""Prompt fragments, bridge variety and fallback questions for the next assistant turn."""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from agents.topic_anchors import (
    build_message_anchors,
    build_topic_anchors,
    response_mentions_anchors,
    strip_diacritics,
)
from agents.turn_signals import (
    get_user_response_depth,
    is_clarification_signal,
    is_extension_offer_question,
    word_count,
)
from agents.types import COMPLETION_TAG, DiagnosticLens, QuestionOnly, SupervisorInsight, TopicBlock, TurnReply
from config.lexicons import THRESHOLDS, Language, pack_for, resolve_language
from config.registry import FALLBACK_QUESTION_KEY
from llm_gateway import LlmGatewayError, generate_object
from services.usage import UsageReporter, report_usage

logger = logging.getLogger(__name__)

_SNIPPET_PUNCT = re.compile(r"[?!.,;:()\[\]{}\"“”‘’'`]")
_STEM_STRIP = re.compile(r"[^a-z0-9\s]")
_SENTENCE_SPLIT = re.compile(r"[?!.]")
_WHITESPACE = re.compile(r"\s+")
_TRAILING_PUNCT = re.compile(r"[.!?…]+$")
_LABEL_TOKEN = re.compile(r"[^\W_]+", re.UNICODE)
_OPENING_SENTENCE = re.compile(r"^[^?!.]*[.!]+\s+(?P<rest>\S.*\?)\s*$", re.DOTALL)

MAX_PROMPT_STEMS = 5
STEM_PREFIX_OVERLAP = 8


def sanitize_user_snippet(text: Optional[str], max_words: int = 10) -> str:
    compact = _WHITESPACE.sub(" ", text or "").strip()
    if not compact:
        return ""
    stripped = _SNIPPET_PUNCT.sub("", compact).strip()
    return " ".join(stripped.split()[:max_words])


def extract_last_assistant_question(text: Optional[str]) -> str:
    """Last ``?``-terminated clause of an assistant message, or ``""``."""

    compact = _WHITESPACE.sub(" ", text or "").strip()
    if not compact or "?" not in compact:
        return ""
    pieces = [chunk.strip() for chunk in compact.split("?") if chunk.strip()]
    if not pieces:
        return ""
    return f"{pieces[-1]}?"


def build_user_bridge_hint(text: Optional[str], language) -> str:
    signal = sanitize_user_snippet(text, 14)
    if not signal:
        return ""
    if resolve_language(language) is Language.IT:
        return f'Apri collegandoti semanticamente al punto utente su "{signal}" senza citazione letterale.'
    return f'Open by semantically linking to the user point about "{signal}" without literal quoting.'


_DEPTH_HINTS = {
    Language.IT: {
        "brief": "Risposta breve: usa una domanda semplice e concreta, con un solo focus.",
        "balanced": "Risposta equilibrata: approfondisci un dettaglio specifico emerso ora.",
        "rich": "Risposta ricca: seleziona un solo elemento ad alto valore e approfondiscilo.",
    },
    Language.EN: {
        "brief": "Short answer: use one simple, concrete follow-up with a single focus.",
        "balanced": "Balanced answer: deepen one specific detail that just emerged.",
        "rich": "Rich answer: pick one high-value element and probe that only.",
    },
}

_TRANSITION_HINTS = {
    Language.IT: {
        "bridge": "Transizione: usa un ponte naturale dal punto utente al nuovo focus.",
        "clean_pivot": "Transizione: pivot pulito con aggancio neutro, senza forzare dettagli non pertinenti.",
        None: "Transizione: mantieni continuità naturale col turno precedente.",
    },
    Language.EN: {
        "bridge": "Transition: use a natural bridge from the user point into the new focus.",
        "clean_pivot": "Transition: use a clean pivot with a neutral bridge, no forced irrelevant details.",
        None: "Transition: keep natural continuity from the previous turn.",
    },
}

_CONTEXT_TEMPLATES = {
    Language.IT: (
        "## RUNTIME SEMANTIC CONTEXT\n"
        "- Fase attiva: {phase}\n"
        '- Topic target: "{topic}"\n'
        '- Segnale utente da valorizzare (parafrasi, non citazione): "{signal}"\n'
        '- Ultima domanda assistente da NON ripetere: "{previous}"\n'
        "- Profondità risposta utente: {depth}\n"
        "\n"
        "Istruzioni di coerenza:\n"
        "1. Inizia con una frase breve che riconosce genuinamente il contenuto della risposta utente (non una formula).\n"
        "2. Mantieni la nuova domanda semanticamente diversa dalla precedente.\n"
        "3. {depth_hint}\n"
        "4. {transition_hint}\n"
        '5. Evita formule rigide ("ora passiamo a", "cambio argomento") e chiusure premature.\n'
        '6. Evita aperture generiche/retoriche ("molto interessante", "e un punto importante", '
        '"grazie per aver condiviso"): reagisci al merito con un dettaglio concreto.\n'
        "7. Se naturale, preferisci una lente diagnostica (esempio, impatto, priorita o azione) con un vincolo "
        "leggero (tempo, segmento, canale o metrica). Se risulta forzato o fuori tema, resta su una domanda semplice.\n"
        "{stems_hint}\n"
        "{clarification_hint}"
    ),
    Language.EN: (
        "## RUNTIME SEMANTIC CONTEXT\n"
        "- Active phase: {phase}\n"
        '- Target topic: "{topic}"\n'
        '- User signal to leverage (paraphrase, no literal quote): "{signal}"\n'
        '- Previous assistant question to avoid repeating: "{previous}"\n'
        "- User response depth: {depth}\n"
        "\n"
        "Coherence instructions:\n"
        "1. Open with one short sentence that genuinely acknowledges the content of the user's response (not a formula).\n"
        "2. Keep the new question semantically distinct from the previous one.\n"
        "3. {depth_hint}\n"
        "4. {transition_hint}\n"
        '5. Avoid rigid templates ("now let\'s move to") and premature closure cues.\n'
        '6. Avoid generic/ceremonial openers ("very interesting", "that\'s an important point", '
        '"thanks for sharing"): respond to the substance using one concrete detail.\n'
        "7. If natural, prefer a diagnostic lens (example, impact, priority, or action) with one light constraint "
        "(timeframe, segment, channel, or metric). If this feels forced or off-topic, keep a simple focused question.\n"
        "{stems_hint}\n"
        "{clarification_hint}"
    ),
}


def _stems_hint(language: Language, stems: Sequence[str]) -> str:
    quoted = ", ".join(f'"{stem}"' for stem in stems)
    if language is Language.IT:
        if stems:
            return (
                f"8. NON iniziare con nessuna di queste aperture già usate di recente: {quoted}. "
                "Usa un incipit diverso e naturale."
            )
        return "8. Varia l'incipit: non usare la stessa apertura del turno precedente."
    if stems:
        return f"8. Do NOT start with any of these recently used openings: {quoted}. Use a different, natural opening."
    return "8. Vary your opening: do not reuse the same opening as the previous turn."


def _clarification_hint(language: Language) -> str:
    if language is Language.IT:
        return (
            "9. L'utente sta chiedendo un chiarimento/disambiguazione: chiarisci prima in modo diretto la domanda "
            "precedente e poi fai una sola domanda di follow-up coerente."
        )
    return (
        "9. The user is asking for clarification/disambiguation: first clarify your previous question directly, "
        "then ask one coherent follow-up question."
    )


def build_runtime_semantic_context_prompt(
    *,
    language,
    phase: str,
    target_topic_label: str,
    supervisor_insight: Optional[SupervisorInsight] = None,
    last_user_message: Optional[str] = None,
    previous_assistant_message: Optional[str] = None,
    recent_bridge_stems: Optional[Sequence[str]] = None,
) -> str:
    """Coherence instructions appended to the system prompt for the next reply.

    Returns ``""`` when there is no prior user message to react to. At most
    five recent bridge stems are listed as openings to avoid; a clarification
    request adds a ninth instruction.
    """

    last_user = (last_user_message or "").strip()
    if not last_user:
        return ""
    lang = resolve_language(language)
    transition_mode = supervisor_insight.transition_mode if supervisor_insight else None
    depth = get_user_response_depth(last_user)
    stems = list(recent_bridge_stems or [])[:MAX_PROMPT_STEMS]
    clarification = is_clarification_signal(last_user, lang)

    prompt = _CONTEXT_TEMPLATES[lang].format(
        phase=phase,
        topic=target_topic_label,
        signal=sanitize_user_snippet(last_user, 18) or "N/A",
        previous=extract_last_assistant_question(previous_assistant_message) or "N/A",
        depth=depth,
        depth_hint=_DEPTH_HINTS[lang][depth],
        transition_hint=_TRANSITION_HINTS[lang][transition_mode],
        stems_hint=_stems_hint(lang, stems),
        clarification_hint=_clarification_hint(lang) if clarification else "",
    )
    return prompt.strip()


_LENS_LABELS: Dict[Language, Dict[DiagnosticLens, str]] = {
    Language.IT: {"priority": "priorita", "action": "azione", "impact": "impatto", "example": "esempio"},
    Language.EN: {"priority": "priority", "action": "action", "impact": "impact", "example": "example"},
}


def choose_diagnostic_lens(text: str, language) -> DiagnosticLens:
    pack = pack_for(language)
    words = word_count(text)
    lower = text.lower()
    if pack.priority_signal.search(lower) or words >= THRESHOLDS.rich_min_words:
        return "priority"
    if pack.negative_signal.search(lower):
        return "action"
    if pack.impact_signal.search(lower) or words >= THRESHOLDS.diagnostic_impact_min_words:
        return "impact"
    return "example"


def build_soft_diagnostic_hint(*, language, last_user_message: Optional[str]) -> str:
    """Optional nudge towards an example/impact/priority/action follow-up."""

    text = (last_user_message or "").strip()
    if not text or word_count(text) < THRESHOLDS.diagnostic_min_words:
        return ""
    lang = resolve_language(language)
    if is_clarification_signal(text, lang):
        return ""
    label = _LENS_LABELS[lang][choose_diagnostic_lens(text, lang)]
    if lang is Language.IT:
        return (
            f'Suggerimento soft: se coerente con il topic, prova una domanda diagnostica sul piano "{label}" '
            "con un vincolo leggero (tempo, segmento, canale o metrica). "
            "Se rischia di essere forzata, ignora questo suggerimento."
        )
    return (
        f'Soft suggestion: if coherent with the topic, use a diagnostic "{label}" follow-up with one light '
        "constraint (timeframe, segment, channel, or metric). If this feels forced, ignore this suggestion."
    )


def replace_literal_topic_title(text: Optional[str], topic_label: Optional[str], replacement: Optional[str]) -> str:
    source = (text or "").strip()
    label = (topic_label or "").strip()
    repl = (replacement or "").strip()
    if not source or not label or not repl:
        return source
    return re.sub(re.escape(label), lambda _: repl, source, flags=re.IGNORECASE)


def normalize_single_question(question: Optional[str]) -> str:
    """Keep only the first question and make sure it ends with ``?``."""

    normalized = (question or "").strip()
    if "?" in normalized:
        normalized = normalized[: normalized.index("?") + 1].strip()
    else:
        normalized = f"{_TRAILING_PUNCT.sub('', normalized).strip()}?"
    return normalized


def normalize_bridge_stem(text: Optional[str]) -> str:
    plain = strip_diacritics((text or "").lower())
    return _WHITESPACE.sub(" ", _STEM_STRIP.sub(" ", plain)).strip()


def extract_bridge_stem(text: Optional[str]) -> str:
    compact = (text or "").strip()
    if not compact:
        return ""
    first_sentence = _SENTENCE_SPLIT.split(compact)[0] or compact
    return normalize_bridge_stem(first_sentence.split(",")[0])


def _field(message: Any, name: str) -> Any:
    if isinstance(message, dict):
        return message.get(name)
    return getattr(message, name, None)


def collect_recent_bridge_stems(messages: Sequence[Any], limit: int = 14) -> List[str]:
    """Distinct opening stems of recent assistant turns, newest first."""

    if limit <= 0:
        return []
    assistant = [m for m in messages if _field(m, "role") == "assistant"]
    window = assistant[-max(limit * 2, limit):]
    seen = set()
    stems: List[str] = []
    for message in reversed(window):
        stem = normalize_bridge_stem(extract_bridge_stem(_field(message, "content") or ""))
        if not stem or stem in seen:
            continue
        seen.add(stem)
        stems.append(stem)
        if len(stems) >= limit:
            break
    return stems


def starts_with_generic_bridge_opener(text: Optional[str], language) -> bool:
    first_sentence = (_SENTENCE_SPLIT.split((text or "").strip())[0] or "").strip()
    return any(pattern.search(first_sentence) for pattern in pack_for(language).generic_openers)


def is_clarification_handled_response(response: Optional[str], language) -> bool:
    text = response or ""
    return bool(pack_for(language).clarification_handled.search(text)) and "?" in text


def is_scope_boundary_handled_response(response: Optional[str], language) -> bool:
    text = response or ""
    return bool(pack_for(language).scope_boundary_handled.search(text)) and "?" in text


def build_natural_topic_cue(topic_label: Optional[str], language) -> str:
    """A short reference to a topic that avoids quoting its full title."""

    pack = pack_for(language)
    label = (topic_label or "").strip()
    if not label:
        return pack.topic_fallback
    anchors = build_message_anchors(label, pack.language).anchors
    if not anchors:
        return pack.topic_fallback
    best = max(anchors, key=len)
    return pack.topic_cue_template.format(anchor=best)


def has_meaningful_topic_overlap(
    user_message: Optional[str],
    next_topic: Optional[TopicBlock],
    language,
) -> List[str]:
    """Non-generic anchors shared by the user message and the next topic.

    An empty list means no usable overlap, so the supervisor pivots cleanly
    instead of bridging.
    """

    message = (user_message or "").strip()
    if not message or next_topic is None or is_clarification_signal(message, language):
        return []
    pack = pack_for(language)
    generic = pack.generic_topic_anchors
    user_anchors = [a for a in build_message_anchors(message, pack.language).anchors if a not in generic]
    topic_anchors = [a for a in build_topic_anchors(next_topic, pack.language).anchors if a not in generic]

    overlaps: List[str] = []
    for user_anchor in user_anchors:
        for topic_anchor in topic_anchors:
            hit = None
            if user_anchor == topic_anchor:
                hit = user_anchor
            elif len(user_anchor) >= STEM_PREFIX_OVERLAP and len(topic_anchor) >= STEM_PREFIX_OVERLAP:
                if user_anchor.startswith(topic_anchor[:STEM_PREFIX_OVERLAP]) or topic_anchor.startswith(
                    user_anchor[:STEM_PREFIX_OVERLAP]
                ):
                    hit = user_anchor if len(user_anchor) <= len(topic_anchor) else topic_anchor
            if hit and hit not in overlaps:
                overlaps.append(hit)
    if overlaps:
        return overlaps

    lower_user = message.lower()
    label_tokens = [
        token
        for token in _LABEL_TOKEN.findall((next_topic.label or "").lower())
        if len(token) >= THRESHOLDS.anchor_min_length and token not in generic
    ]
    return [token for token in label_tokens if token in lower_user]


def is_usable_bridge_snippet(snippet: Optional[str], language) -> bool:
    clean = _WHITESPACE.sub(" ", snippet or "").strip()
    if not clean or is_clarification_signal(clean, language):
        return False
    if word_count(clean) < THRESHOLDS.bridge_snippet_min_words:
        return False
    return not pack_for(language).low_signal_snippet.search(clean)


def _question_only(
    prompt_lines: Sequence[str],
    *,
    model_key: str,
    source: str,
    usage_reporter: Optional[UsageReporter],
) -> str:
    generation = generate_object(model_key, QuestionOnly, prompt="\n".join(prompt_lines), temperature=0.2)
    report_usage(usage_reporter, source=source, model=generation.model_id, usage=generation.usage)
    return normalize_single_question(generation.value.question.strip())


def generate_consent_question_only(
    *,
    language,
    model_key: str = FALLBACK_QUESTION_KEY,
    usage_reporter: Optional[UsageReporter] = None,
) -> str:
    """Ask permission to collect contact details, as exactly one yes/no question."""

    lang = resolve_language(language)
    prompt = [
        f"Language: {lang.value}",
        "Task: Write a natural transition into data collection and ask exactly ONE yes/no question asking "
        "permission to collect contact details for follow-up.",
        "Structure: (1) one short linking sentence acknowledging content interview closure; "
        "(2) one yes/no consent question.",
        "Do NOT ask for any specific field yet. Do NOT ask topic questions. Do NOT close the interview.",
        "Keep it natural and concise. End with exactly one question mark.",
    ]
    return _question_only(
        prompt, model_key=model_key, source="generate_consent_question_only", usage_reporter=usage_reporter
    )


def generate_field_question_only(
    *,
    language,
    field_label: str,
    model_key: str = FALLBACK_QUESTION_KEY,
    usage_reporter: Optional[UsageReporter] = None,
) -> str:
    """Ask for a single contact field and nothing else."""

    lang = resolve_language(language)
    prompt = [
        f"Language: {lang.value}",
        f"Target field to collect now: {field_label}",
        "Task: Ask exactly ONE concise question to collect this field only.",
        "Do NOT ask for other fields. Do NOT ask topic questions. Do NOT close the interview.",
        "Keep it natural and concise. End with exactly one question mark.",
    ]
    return _question_only(
        prompt, model_key=model_key, source="generate_field_question_only", usage_reporter=usage_reporter
    )


def build_topic_fallback_question(topic_label: Optional[str], language) -> str:
    pack = pack_for(language)
    cue = build_natural_topic_cue(topic_label, pack.language)
    return normalize_single_question(pack.fallback_topic_question.format(cue=cue))


def generate_question_only(
    *,
    language,
    topic_label: str,
    topic_cue: Optional[str] = None,
    sub_goal: Optional[str] = None,
    last_user_message: Optional[str] = None,
    previous_assistant_question: Optional[str] = None,
    semantic_bridge_hint: Optional[str] = None,
    avoid_bridge_stems: Sequence[str] = (),
    require_acknowledgment: bool = False,
    transition_mode: Optional[str] = None,
    model_key: str = FALLBACK_QUESTION_KEY,
    usage_reporter: Optional[UsageReporter] = None,
) -> str:
    """One focused question on a topic, written by the fallback model.

    A stock opening sentence is dropped and a literal topic title is swapped
    for ``topic_cue``.
    """

    lang = resolve_language(language)
    if require_acknowledgment:
        structure = "Output structure: (1) one short acknowledgment sentence; (2) one specific question."
    else:
        structure = "Output structure: one concise question."
    transition = {
        "bridge": f'Transition mode: bridge naturally from the user\'s point to "{topic_label}" without literal quotes.',
        "clean_pivot": "Transition mode: clean pivot. Use a neutral acknowledgment and do not paraphrase "
        "irrelevant user details.",
    }.get(transition_mode or "")
    prompt = [
        f"Language: {lang.value}",
        f"Topic title (internal): {topic_label}",
        f"Natural topic cue for user-facing wording: {topic_cue}" if topic_cue else None,
        f"Sub-goal: {sub_goal}" if sub_goal else None,
        f'User last message: "{last_user_message}"' if last_user_message else None,
        f'Previous assistant question to avoid repeating: "{previous_assistant_question}"'
        if previous_assistant_question
        else None,
        "Do NOT reuse these recent bridge openings (normalized): " + " | ".join(list(avoid_bridge_stems)[:8])
        if avoid_bridge_stems
        else None,
        f"Bridge hint: {semantic_bridge_hint}" if semantic_bridge_hint else None,
        "Acknowledgment quality: reference one concrete detail from the user's message "
        "(fact, constraint, example, or cause/effect).",
        'Avoid stock openers like "molto interessante", "e un punto importante", "grazie per aver condiviso", '
        '"very interesting", "that\'s an important point", "thanks for sharing".',
        build_soft_diagnostic_hint(language=lang, last_user_message=last_user_message) or None,
        structure,
        transition,
        "Task: Ask exactly ONE concise interview question about the topic. Do NOT close the interview. "
        "Do NOT ask for contact data. Avoid literal quote of user's words. Do NOT repeat the topic title "
        "verbatim; use natural phrasing. End with a single question mark.",
    ]
    question = _question_only(
        [line for line in prompt if line],
        model_key=model_key,
        source="generate_question_only",
        usage_reporter=usage_reporter,
    )
    question = strip_generic_bridge_opener(question, lang)
    if topic_cue:
        question = replace_literal_topic_title(question, topic_label, topic_cue)
    return question


def strip_generic_bridge_opener(text: Optional[str], language) -> str:
    """Drop a stock opening sentence ("Molto interessante.") when a question follows it."""

    source = (text or "").strip()
    if not starts_with_generic_bridge_opener(source, language):
        return source
    match = _OPENING_SENTENCE.match(source)
    if not match:
        return source
    rest = match.group("rest").strip()
    return rest[:1].upper() + rest[1:]


def generate_topic_question(
    topic: Optional[TopicBlock],
    *,
    language,
    insight: Optional[SupervisorInsight] = None,
    last_user_message: Optional[str] = None,
    previous_assistant_message: Optional[str] = None,
    avoid_bridge_stems: Sequence[str] = (),
    usage_reporter: Optional[UsageReporter] = None,
) -> str:
    """Topic question for a rejected or closing reply.

    Falls back to the fixed topic question when the model fails or its
    question never touches the topic's anchors.
    """

    fallback = build_topic_fallback_question(topic.label if topic else None, language)
    if topic is None:
        return fallback
    lang = resolve_language(language)
    snippet = sanitize_user_snippet(last_user_message, 14)
    usable = is_usable_bridge_snippet(snippet, lang)
    transition_mode = insight.transition_mode if insight else None
    try:
        question = generate_question_only(
            language=lang,
            topic_label=topic.label,
            topic_cue=build_natural_topic_cue(topic.label, lang),
            sub_goal=insight.next_sub_goal if insight else None,
            last_user_message=last_user_message,
            previous_assistant_question=extract_last_assistant_question(previous_assistant_message) or None,
            semantic_bridge_hint=build_user_bridge_hint(last_user_message, lang)
            if usable and transition_mode != "clean_pivot"
            else None,
            avoid_bridge_stems=avoid_bridge_stems,
            require_acknowledgment=usable,
            transition_mode=transition_mode,
            usage_reporter=usage_reporter,
        )
    except LlmGatewayError as exc:
        logger.warning("Topic question generation failed: %s", exc)
        return fallback
    roots = build_topic_anchors(topic, lang).anchor_roots
    if len(question) < 2 or (roots and not response_mentions_anchors(question, roots)):
        return fallback
    return question


def generate_deep_offer_only(
    *,
    language,
    extension_preview: Sequence[str] = (),
    model_key: str = FALLBACK_QUESTION_KEY,
    usage_reporter: Optional[UsageReporter] = None,
) -> str:
    lang = resolve_language(language)
    hints = [str(item).strip() for item in extension_preview if str(item or "").strip()]
    if hints:
        starter = (
            "3) Propose to continue and mention one indirect starting point connected to what the user shared, "
            f"for example around: {hints[0]}. Use no quotes, labels, or list formatting."
        )
    else:
        starter = (
            "3) Propose to continue and mention one concrete single starting point connected to what the user "
            "shared, using indirect wording."
        )
    prompt = "\n".join(
        [
            f"Language: {lang.value}",
            "Task: Write a short extension message with this structure:",
            "1) Start with a short thank-you for the user's availability and answers so far.",
            "2) Say naturally that the planned interview time is over (or would be over).",
            starter,
            "4) Ask exactly ONE yes/no question asking availability for a few more deep-dive questions.",
            "Do NOT ask topic questions. Do NOT ask for contacts. Do NOT close the interview.",
            "Keep it natural and concise. End with exactly one question mark.",
        ]
    )
    generation = generate_object(model_key, TurnReply, prompt=prompt, temperature=0.2)
    report_usage(usage_reporter, source="generate_deep_offer_only", model=generation.model_id, usage=generation.usage)
    return normalize_single_question(generation.value.message.strip())


def enforce_deep_offer_question(
    *,
    language,
    current_text: Optional[str] = None,
    extension_preview: Sequence[str] = (),
    model_key: str = FALLBACK_QUESTION_KEY,
    usage_reporter: Optional[UsageReporter] = None,
) -> str:
    """Keep ``current_text`` if it already offers to continue, else write an offer. Never raises."""

    pack = pack_for(language)
    current = (current_text or "").replace(COMPLETION_TAG, "").strip()
    if current:
        cleaned = normalize_single_question(current)
        if is_extension_offer_question(cleaned, pack.language):
            return cleaned
    try:
        generated = generate_deep_offer_only(
            language=pack.language,
            extension_preview=extension_preview,
            model_key=model_key,
            usage_reporter=usage_reporter,
        )
        if is_extension_offer_question(generated, pack.language):
            return generated
    except LlmGatewayError as exc:
        logger.warning("Extension offer generation failed: %s", exc)
    hint = next((str(item).strip() for item in extension_preview if str(item or "").strip()), "")
    if hint:
        return pack.extension_offer_with_hint.format(hint=hint)
    return pack.extension_offer_question


__all__ = [
    "build_natural_topic_cue",
    "build_runtime_semantic_context_prompt",
    "build_soft_diagnostic_hint",
    "build_topic_fallback_question",
    "build_user_bridge_hint",
    "choose_diagnostic_lens",
    "collect_recent_bridge_stems",
    "enforce_deep_offer_question",
    "extract_bridge_stem",
    "extract_last_assistant_question",
    "generate_consent_question_only",
    "generate_deep_offer_only",
    "generate_field_question_only",
    "generate_question_only",
    "generate_topic_question",
    "has_meaningful_topic_overlap",
    "is_clarification_handled_response",
    "is_scope_boundary_handled_response",
    "is_usable_bridge_snippet",
    "normalize_bridge_stem",
    "normalize_single_question",
    "replace_literal_topic_title",
    "sanitize_user_snippet",
    "starts_with_generic_bridge_opener",
    "strip_generic_bridge_opener",
]
