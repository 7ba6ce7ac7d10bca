"""Per-language heuristic tables used by the turn classifiers and builders.

Every lexicon the engine matches against lives here as data so that it can be
tuned (or overridden from YAML) without touching the control flow that uses
it. Patterns are compiled once per ``LanguagePack``.
"""
from __future__ import annotations

import dataclasses
import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Pattern, Tuple

from .settings import settings

logger = logging.getLogger(__name__)


class Language(str, Enum):
    IT = "it"
    EN = "en"


def resolve_language(code: Optional[str]) -> Language:
    """Map a raw language code (``it-IT``, ``en``, ``None``...) to a Language."""

    if isinstance(code, Language):
        return code
    if (code or "").strip().lower().startswith("it"):
        return Language.IT
    return Language.EN


def _words(*alternatives: str) -> Pattern[str]:
    return re.compile(r"\b(?:" + "|".join(alternatives) + r")\b", re.IGNORECASE)


def _stems(*alternatives: str) -> Pattern[str]:
    return re.compile("(?:" + "|".join(alternatives) + ")", re.IGNORECASE)


def _starts(*alternatives: str) -> Pattern[str]:
    return re.compile(r"^(?:" + "|".join(alternatives) + r")\b", re.IGNORECASE)


@dataclass(frozen=True)
class Thresholds:
    """Word-count thresholds shared by every language."""

    brief_max_words: int = 10
    rich_min_words: int = 35
    either_or_max_words: int = 12
    meta_question_max_words: int = 10
    diagnostic_min_words: int = 5
    diagnostic_impact_min_words: int = 14
    bridge_snippet_min_words: int = 3
    topic_anchor_limit: int = 6
    message_anchor_limit: int = 4
    anchor_root_length: int = 6
    anchor_min_length: int = 4


THRESHOLDS = Thresholds()

CLARIFICATION_FILLER: Pattern[str] = re.compile(r"^(?:boh|eh|mh|hmm|\?+|ok\??)$", re.IGNORECASE)


@dataclass(frozen=True)
class LanguagePack:
    language: Language
    stopwords: FrozenSet[str]
    functional_words: FrozenSet[str]
    functional_suffix: Optional[Pattern[str]]
    generic_topic_anchors: FrozenSet[str]
    dedup_stopwords: FrozenSet[str]
    clarification: Pattern[str]
    either_or: Pattern[str]
    question_starters: Pattern[str]
    off_topic: Pattern[str]
    meta_question: Pattern[str]
    extension_offer: Pattern[str]
    generic_openers: Tuple[Pattern[str], ...]
    low_signal_snippet: Pattern[str]
    clarification_handled: Pattern[str]
    scope_boundary_handled: Pattern[str]
    negative_signal: Pattern[str]
    priority_signal: Pattern[str]
    impact_signal: Pattern[str]
    closure: Pattern[str]
    contact_request: Pattern[str]
    continuation: Pattern[str]
    specific_probe: Pattern[str]
    accept_reply: Pattern[str]
    refuse_reply: Pattern[str]
    topic_fallback: str
    topic_cue_template: str
    fallback_topic_question: str
    extension_offer_question: str
    extension_offer_with_hint: str
    farewell: str
    apology: str
    extra: Dict[str, Any] = field(default_factory=dict)


ITALIAN = LanguagePack(
    language=Language.IT,
    stopwords=frozenset(
        {
            "il", "lo", "la", "i", "gli", "le", "un", "uno", "una",
            "di", "a", "da", "in", "su", "per", "con", "tra", "fra",
            "del", "dello", "della", "dei", "degli", "delle",
            "al", "allo", "alla", "ai", "agli", "alle",
            "che", "e", "o", "ma", "non", "piu", "meno", "come",
            "quale", "quali", "questa", "questo", "questi", "queste",
            "cosa", "chi", "dove", "quando", "perche", "cioe",
        }
    ),
    functional_words=frozenset(
        {
            "cerco", "cerca", "cerchi", "trovo", "trova", "voglio", "vuole", "vuoi",
            "posso", "puoi", "deve", "devo", "dobbiamo", "vado", "andiamo", "viene",
            "vengo", "resto", "rimane", "rimango", "sento", "vedo", "provo",
            "compro", "servo", "piace", "manca", "basta", "sembra", "succede",
            "stato", "stata", "fatto", "fatta", "detto", "detta",
            "vorrei", "dovrei", "potrei", "avrei", "sarei",
            "ancora", "anche", "bene", "male", "molto", "poco", "quasi", "sempre",
            "spesso", "magari", "forse", "sicuro", "proprio", "tipo", "tanto",
            "abbastanza", "addirittura", "comunque", "invece", "tuttavia", "quindi",
            "pero", "allora", "certo", "certa", "ovvio", "ovvia",
            "subito", "prima", "dopo", "ormai", "appena", "niente", "nulla",
        }
    ),
    # -ando/-endo are unambiguously gerunds
    functional_suffix=re.compile(r"(?:ando|endo)$", re.IGNORECASE),
    generic_topic_anchors=frozenset(
        {
            "tema", "temi", "aspetto", "aspetti", "punto", "punti",
            "progetto", "progetti", "iniziativa", "iniziative", "azienda", "aziende",
            "soluzione", "soluzioni", "impatto", "valore", "processo", "processi",
            "sistema", "sistemi", "approccio", "uso",
        }
    ),
    dedup_stopwords=frozenset(
        {
            "che", "chi", "come", "con", "del", "della", "delle", "degli", "dei", "dello",
            "dopo", "fare", "fatto", "fra", "gli", "hai", "hanno", "ho", "il", "in", "la",
            "le", "lo", "ma", "mi", "nei", "nel", "nella", "nelle", "non", "per", "piu",
            "puoi", "quale", "quali", "quello", "questa", "questo", "se", "si", "sono",
            "su", "sul", "sulla", "tra", "tu", "un", "una", "uno",
        }
    ),
    clarification=_words(
        "non capisco", "non ho capito", r"non mi [eè] chiaro", "puoi chiarire",
        "puoi spiegare meglio", "cosa intendi", "intendi dire", "ti riferisci",
        "in che senso", "parli di", "quale dei due",
    ),
    either_or=_words("o", "oppure"),
    question_starters=_starts(
        "come", "cosa", r"perch[eé]", "quando", "dove", "chi", "quale", "quali",
        "quanto", "in che modo", "mi spieghi", "puoi spiegare",
    ),
    off_topic=_words(
        "che ore", "che tempo", "meteo", "oroscopo", "barzelletta", "storia divertente",
        "chi sei", "come stai", "quanti anni hai", "dove vivi", "che modello usi",
        "chatgpt", "openai", "calcio", "sport", "borsa", "bitcoin", "criptovalute", "ricetta",
    ),
    meta_question=_words("tu", "ti", "te", "sei", "puoi"),
    extension_offer=_words(
        "ti va di continuare", "vuoi continuare", r"qualche minuto in pi[uù]",
        "hai ancora qualche minuto", r"hai disponibilit[aà]", r"estendere(?:\s+l')?\s*intervista",
        "proseguire", r"ulteriori? domand[ae] di approfondimento",
    ),
    generic_openers=tuple(
        re.compile(p, re.IGNORECASE)
        for p in (
            r"^capisco\b", r"^chiaro\b", r"^perfetto\b", r"^ottimo\b", r"^bene\b",
            r"^grazie\b", r"^molto interessante\b", r"^[eè] un punto importante\b",
            r"^quello che dici\b",
        )
    ),
    low_signal_snippet=_words(
        r"te l['’]?ho gi[aà] detto", "non capisco", "preferisco non dirlo", "boh", "ok", r"s[iì]", "no",
    ),
    clarification_handled=_words(
        "per chiarire", "intendo", "mi riferivo", "in altre parole", r"pi[uù] chiaramente",
        r"cio[eè]", "parlavo di",
    ),
    scope_boundary_handled=_words(
        r"fuori(?:\s+dallo)?\s+scopo", "esula dallo scopo", "nell'ambito di questa intervista",
        "restiamo su", "torniamo a", "per questa intervista",
    ),
    negative_signal=_stems("problema", "critic", "risch", "limite", "debolezz", "poco", "scarso", "difficolt", "non "),
    priority_signal=_stems("priorit", "prima", "subito", "urgent", r"pi[uù] importante"),
    impact_signal=_stems(
        "impatto", "effetto", "risultato", "crescita", "calo", "mercato", "client", "kpi",
        "vendite", "margine", "tempo", "costo",
    ),
    closure=re.compile(
        r"\b(?:arrivederci|buona giornata|buon lavoro|a presto|ci sentiamo|alla prossima|buona fortuna)\b"
        r"|INTERVIEW_COMPLETED",
        re.IGNORECASE,
    ),
    contact_request=_words("email", "e-mail", "telefono", "cellulare", r"numero di (?:telefono|cellulare|contatto)", "linkedin"),
    continuation=_words(
        r"continu\w*", r"prosegu\w*", "ancora qualche", "ancora un po", "altri minuti",
        r"pi[uù] minuti", "ulteriori domande", "qualche domanda", "qualche minuto", "paio di minuti",
    ),
    specific_probe=_words(
        "esempio", "concreto", r"raccont\w+", "in che modo", "entrare nel dettaglio", "nello specifico",
    ),
    accept_reply=_words(
        r"s[iì]", "certo", "va bene", "ok", "okay", "volentieri", r"perch[eé] no", "d'accordo",
        "continuiamo", "procediamo", "assolutamente", "certamente",
    ),
    refuse_reply=_words(
        "no", "non ho tempo", "basta", "preferisco di no", "non mi va", "devo andare",
        "fermiamoci", "non ora", "non grazie", "no grazie",
    ),
    topic_fallback="questo tema",
    topic_cue_template="{anchor}",
    fallback_topic_question="Restando su {cue}, mi racconti un esempio concreto?",
    extension_offer_question=(
        "Abbiamo toccato i temi principali. Ti va di continuare ancora qualche minuto "
        "con un paio di domande di approfondimento?"
    ),
    extension_offer_with_hint=(
        "Grazie per il tempo e per i contributi condivisi fin qui. Il tempo previsto per l'intervista "
        "sarebbe terminato: se vuoi, possiamo continuare con qualche domanda in più, partendo da uno dei "
        "punti emersi, ad esempio {hint}. Ti va di proseguire ancora per qualche minuto?"
    ),
    farewell="Grazie per il tempo e per le risposte, l'intervista si chiude qui.",
    apology="Mi dispiace, si è verificato un errore. Riprova tra qualche istante.",
)

ENGLISH = LanguagePack(
    language=Language.EN,
    stopwords=frozenset(
        {
            "the", "a", "an", "and", "or", "to", "of", "in", "on", "for", "with", "without",
            "by", "at", "from", "is", "are", "be", "this", "that", "these", "those",
            "what", "which", "who", "whom", "where", "when", "why", "how",
        }
    ),
    functional_words=frozenset(),
    functional_suffix=None,
    generic_topic_anchors=frozenset(
        {
            "topic", "topics", "aspect", "aspects", "point", "points",
            "project", "projects", "initiative", "initiatives", "company", "companies",
            "solution", "solutions", "impact", "value", "process", "processes",
            "system", "systems", "approach", "usage", "use",
        }
    ),
    dedup_stopwords=frozenset(
        {
            "about", "an", "and", "are", "as", "at", "can", "could", "did", "do", "does",
            "for", "from", "how", "in", "is", "it", "of", "on", "or", "the", "this", "that",
            "to", "was", "were", "what", "when", "where", "which", "why", "with", "would", "you",
        }
    ),
    clarification=_words(
        r"i don['’]t understand", "i do not understand", "not clear", "can you clarify",
        "can you explain", "what do you mean", "do you mean", "are you referring to", "which one",
    ),
    either_or=_words("or"),
    question_starters=_starts(
        "how", "what", "why", "when", "where", "who", "which", "can you", "could you",
        "would you", "please explain",
    ),
    off_topic=_words(
        "what time", "weather", "horoscope", "joke", "funny story", "who are you", "how are you",
        "how old are you", "where do you live", "what model do you use", "chatgpt", "openai",
        "football", "soccer", "sports", "stock market", "bitcoin", "crypto", "recipe",
    ),
    meta_question=_words("you", "your", "are you", "can you"),
    extension_offer=_words(
        "would you like to continue", "do you want to continue", "few more minutes",
        "are you available", "extend the interview", "continue for a few more minutes",
        "follow-up questions", "deep-dive questions",
    ),
    generic_openers=tuple(
        re.compile(p, re.IGNORECASE)
        for p in (
            r"^i see\b", r"^got it\b", r"^perfect\b", r"^great\b", r"^thanks\b",
            r"^very interesting\b", r"^that'?s an important point\b",
        )
    ),
    low_signal_snippet=_words(
        "i already told you", "i don.t understand", "prefer not to say", "ok", "yes", "no",
    ),
    clarification_handled=_words(
        "to clarify", "i meant", "i was referring to", "in other words", "more clearly",
        "that is", "i was talking about",
    ),
    scope_boundary_handled=_words(
        "out of scope", "outside the scope", "for this interview", "let's stay on",
        "let's get back to", "within this interview",
    ),
    negative_signal=_stems("problem", "issue", "risk", "limit", "weak", "difficult", "struggl", "lack", "poor", "not ", "n't "),
    priority_signal=_stems("priorit", "first", "urgent", "asap", "right away", "most important", "immediately"),
    impact_signal=_stems(
        "impact", "effect", "result", "growth", "decline", "market", "client", "customer",
        "kpi", "sales", "revenue", "margin", "time", "cost",
    ),
    closure=re.compile(
        r"\b(?:goodbye|good-bye|have a great day|have a good day|farewell|see you soon|all the best|bye bye)\b"
        r"|INTERVIEW_COMPLETED",
        re.IGNORECASE,
    ),
    contact_request=_words("email", "e-mail", "phone number", "telephone", "mobile number", "linkedin"),
    continuation=_words(
        r"continu\w*", "keep going", "a few more", "few extra", "some more questions",
        "bit longer", "more minutes", "a few questions",
    ),
    specific_probe=_words(
        "example", "specific", r"concret\w*", "tell me (?:more about|how)", "in what way",
        "walk me through", "detail",
    ),
    accept_reply=_words(
        "yes", "yeah", "yep", "sure", "ok", "okay", "of course", "absolutely",
        "let's continue", "go ahead", "why not", "sounds good", "happy to",
    ),
    refuse_reply=_words(
        "no", "nope", "not now", "no time", "i have to go", "stop", "i'd rather not",
        "prefer not", "i'm done", "no thanks",
    ),
    topic_fallback="this topic",
    topic_cue_template="this aspect about {anchor}",
    fallback_topic_question="Staying on {cue}, could you share a concrete example?",
    extension_offer_question=(
        "We have covered the main topics. Would you like to continue for a few more minutes "
        "with a couple of deep-dive questions?"
    ),
    extension_offer_with_hint=(
        "Thank you for your time and the insights shared so far. The planned interview time would now be "
        "over: if you want, we can continue with a few extra questions, starting from one point that "
        "emerged, for example {hint}. Would you like to continue for a few more minutes?"
    ),
    farewell="Thank you for your time and your answers, this concludes the interview.",
    apology="Sorry, something went wrong. Please try again in a moment.",
)

_BUILTIN: Mapping[Language, LanguagePack] = {Language.IT: ITALIAN, Language.EN: ENGLISH}
_active: Dict[Language, LanguagePack] = dict(_BUILTIN)

_SET_FIELDS = {"stopwords", "functional_words", "generic_topic_anchors", "dedup_stopwords"}
_STRING_FIELDS = {
    "topic_fallback", "topic_cue_template", "fallback_topic_question",
    "extension_offer_question", "extension_offer_with_hint", "farewell", "apology",
}
_STEM_FIELDS = {"negative_signal", "priority_signal", "impact_signal"}


def _load_yaml(path: str) -> dict:
    import yaml

    with open(path, "r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def _override_pack(pack: LanguagePack, values: Mapping[str, Any]) -> LanguagePack:
    changes: Dict[str, Any] = {}
    known = {f.name for f in dataclasses.fields(LanguagePack)}
    for name, raw in values.items():
        if name not in known or name in {"language", "extra"}:
            logger.warning("Ignoring unknown lexicon field %s for %s", name, pack.language.value)
            continue
        if name in _SET_FIELDS:
            changes[name] = frozenset(str(v).lower() for v in raw or [])
        elif name in _STRING_FIELDS:
            changes[name] = str(raw)
        elif name == "generic_openers":
            changes[name] = tuple(re.compile(str(p), re.IGNORECASE) for p in raw or [])
        elif name == "functional_suffix":
            changes[name] = re.compile(str(raw), re.IGNORECASE) if raw else None
        elif name in _STEM_FIELDS:
            changes[name] = _stems(*[str(v) for v in raw or []])
        else:
            changes[name] = _words(*[str(v) for v in raw or []])
    return dataclasses.replace(pack, **changes)


def load_overrides(path: str) -> None:
    """Apply YAML overrides on top of the built-in packs.

    The file maps a language code to field names; pattern fields take a list
    of regex alternatives, set fields a list of words.
    """

    data = _load_yaml(path)
    for code, values in data.items():
        language = resolve_language(str(code))
        if not isinstance(values, Mapping):
            continue
        _active[language] = _override_pack(_BUILTIN[language], values)


def reset_overrides() -> None:
    _active.clear()
    _active.update(_BUILTIN)


def pack_for(language: Any) -> LanguagePack:
    """Return the active pack for a Language or raw code."""

    return _active[resolve_language(language)]


def available_languages() -> Iterable[Language]:
    return tuple(_active.keys())


def _bootstrap() -> None:
    path = settings.LEXICON_OVERRIDES
    if path and os.path.exists(path):
        load_overrides(path)


_bootstrap()


__all__ = [
    "CLARIFICATION_FILLER",
    "ENGLISH",
    "ITALIAN",
    "Language",
    "LanguagePack",
    "THRESHOLDS",
    "Thresholds",
    "available_languages",
    "load_overrides",
    "pack_for",
    "reset_overrides",
    "resolve_language",
]
