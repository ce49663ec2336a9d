"""
Text preprocessing: stop words, language detection and tokenization.

tokenize() is a pure function: lower-case, strip everything that is not a
letter or whitespace, split, keep tokens of 3-50 characters and drop the stop
words of the detected language.

Usage:
    from internal_linker.tokenizer import Preprocessor, tokenize

    tokenize("Cats make great pets")      # ['cats', 'great', 'pets']
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING

from internal_linker.models import Document

if TYPE_CHECKING:
    from internal_linker.cache import MemoryManager
    from internal_linker.persistence import LinkStore

log = logging.getLogger("internal_linker.tokenizer")


# =============================================================================
# Configuration
# =============================================================================

MIN_TOKEN_LENGTH = 3
MAX_TOKEN_LENGTH = 50
DEFAULT_LANGUAGE = "en"

# Everything that is not a unicode letter or whitespace
_NON_LETTER_PATTERN = re.compile(r"[^\w\s]|[\d_]")
_WORD_PATTERN = re.compile(r"[^\W\d_]+")
_JAPANESE_PATTERN = re.compile(r"[\u3040-\u30ff\u3400-\u4dbf\u4e00-\u9fff]")


# =============================================================================
# Stop Words
# =============================================================================

STOPWORDS: dict[str, frozenset[str]] = {
    "en": frozenset({
        "a", "an", "and", "are", "as", "at", "be", "by", "for", "from", "has", "he",
        "in", "is", "it", "its", "of", "on", "that", "the", "to", "was", "were",
        "will", "with", "this", "but", "they", "have", "had", "what", "when",
        "where", "who", "which", "why", "how", "all", "any", "both", "each", "few",
        "more", "most", "other", "some", "such", "no", "nor", "not", "only", "own",
        "same", "so", "than", "too", "very", "can", "just", "should", "now", "i",
        "you", "your", "we", "my", "me", "her", "his", "their", "our", "us", "am",
        "been", "being", "do", "does", "did", "doing", "would", "could", "might",
        "must", "shall", "into", "if", "then", "else", "out", "about", "over",
        "again", "once", "under", "further", "before", "after", "above", "below",
        "up", "down", "off", "through", "while", "during", "make", "makes", "made",
    }),
    "fr": frozenset({
        "le", "la", "les", "un", "une", "des", "du", "de", "et", "est", "en",
        "que", "qui", "dans", "pour", "sur", "au", "avec", "par", "mais", "ou",
        "où", "donc", "or", "ni", "car", "ce", "ces", "cette", "cet", "il", "elle",
        "ils", "elles", "nous", "vous", "leur", "leurs", "mon", "ton", "son",
        "notre", "votre", "tout", "tous", "toute", "toutes", "même", "quel",
        "quelle", "quels", "quelles", "sans", "très", "plus", "moins", "autre",
        "autres", "être", "avoir", "faire", "dire", "aller", "voir", "venir",
        "prendre", "donner", "falloir", "pouvoir", "vouloir", "savoir",
    }),
    "de": frozenset({
        "der", "die", "das", "den", "dem", "des", "ein", "eine", "einer", "eines",
        "einem", "einen", "und", "oder", "aber", "auch", "wenn", "dann", "als",
        "seit", "von", "aus", "nach", "bei", "bis", "durch", "für", "mit", "zu",
        "zur", "zum", "in", "im", "an", "auf", "über", "unter", "neben", "zwischen",
        "hinter", "vor", "ich", "du", "er", "sie", "es", "wir", "ihr",
        "mein", "dein", "sein", "unser", "euer", "nicht", "kein", "keine",
        "nur", "noch", "schon", "jetzt", "hier", "da", "dort", "dieser", "diese",
        "dieses", "jener", "jene", "jenes", "welcher", "welche", "welches",
    }),
    "es": frozenset({
        "el", "la", "los", "las", "un", "una", "unos", "unas", "y", "o", "pero",
        "si", "de", "del", "a", "ante", "bajo", "con", "contra", "desde", "en",
        "entre", "hacia", "hasta", "para", "por", "según", "sin", "sobre", "tras",
        "yo", "tú", "él", "ella", "nosotros", "vosotros", "ellos", "ellas", "este",
        "esta", "estos", "estas", "ese", "esa", "esos", "esas", "aquel", "aquella",
        "aquellos", "aquellas", "mi", "tu", "su", "nuestro", "vuestro", "qué",
        "cuál", "quién", "dónde", "cuándo", "cómo",
    }),
    "it": frozenset({
        "il", "lo", "la", "i", "gli", "le", "uno", "una", "un", "e", "o", "ma",
        "se", "perché", "anche", "come", "dove", "quando", "chi", "che", "cui",
        "non", "più", "quale", "quanto", "quanti", "quanta", "quante", "quello",
        "quella", "quelli", "quelle", "questo", "questa", "questi", "queste", "si",
        "tutto", "tutti", "tutte", "tutta", "nei", "nel", "nella", "nelle", "negli",
        "suo", "sua", "suoi", "sue", "mio", "mia", "miei", "mie", "tuo", "tua",
        "tuoi", "tue", "nostro", "nostra", "nostri", "nostre",
    }),
    "pt": frozenset({
        "o", "a", "os", "as", "um", "uma", "uns", "umas", "e", "ou", "mas", "se",
        "porque", "que", "quando", "onde", "como", "quem", "qual", "quais", "de",
        "do", "da", "dos", "das", "no", "na", "nos", "nas", "ao", "à", "aos", "às",
        "pelo", "pela", "pelos", "pelas", "este", "esta", "estes", "estas", "esse",
        "essa", "esses", "essas", "aquele", "aquela", "aqueles", "aquelas", "isto",
        "isso", "aquilo", "meu", "minha", "meus", "minhas", "teu", "tua", "teus",
    }),
    "ja": frozenset({
        "の", "に", "は", "を", "た", "が", "で", "て", "と", "し", "れ", "さ",
        "ある", "いる", "も", "な", "この", "これ", "その", "それ",
        "あの", "あれ", "どの", "どれ", "わたし", "あなた", "かれ", "かのじょ",
        "から", "まで", "より", "によって", "について", "として", "ために",
        "および", "または", "すなわち", "かつ", "ところが", "ただし", "しかし",
        "また", "でも", "そして", "なお", "だが", "けれども",
    }),
}

SUPPORTED_LANGUAGES = tuple(STOPWORDS)

# Union of every list, used for topic extraction regardless of language
ALL_STOPWORDS: frozenset[str] = frozenset().union(*STOPWORDS.values())


# =============================================================================
# Language Detection
# =============================================================================

_LANGUAGE_MARKERS: dict[str, frozenset[str]] = {
    "en": frozenset({"the", "is", "at", "in", "that", "this"}),
    "fr": frozenset({"le", "la", "les", "est", "sont", "dans"}),
    "de": frozenset({"der", "die", "das", "ist", "und", "für"}),
    "es": frozenset({"el", "la", "los", "las", "es", "en"}),
    "it": frozenset({"il", "lo", "la", "gli", "le", "è"}),
    "pt": frozenset({"o", "a", "os", "as", "é", "em"}),
}

# (characters, bonus) per language
_DIACRITIC_HINTS: dict[str, tuple[str, int]] = {
    "de": ("ßü", 2),
    "fr": ("çé", 1),
    "es": ("ñ", 2),
    "pt": ("ãõ", 2),
}


def detect_language(text: str) -> str:
    """
    Guess the language of ``text`` from marker words and diacritics.

    Japanese script wins outright. Otherwise each language scores one point
    per whole-word marker hit plus a diacritic bonus; with no evidence at all
    the default language is returned.
    """
    if _JAPANESE_PATTERN.search(text):
        return "ja"

    normalized = text.lower()
    words = _WORD_PATTERN.findall(normalized)

    best_lang = DEFAULT_LANGUAGE
    best_score = 0
    for lang, markers in _LANGUAGE_MARKERS.items():
        score = sum(1 for word in words if word in markers)
        hint = _DIACRITIC_HINTS.get(lang)
        if hint is not None and any(ch in normalized for ch in hint[0]):
            score += hint[1]
        if score > best_score:
            best_lang, best_score = lang, score
    return best_lang


# =============================================================================
# Tokenization
# =============================================================================


def tokenize(
    text: str,
    detector: Callable[[str], str] = detect_language,
) -> list[str]:
    """
    Turn raw text into the term sequence used for vectorization.

    Args:
        text: Raw document text
        detector: Callable returning a language code for the stop word list

    Returns:
        Terms in document order (duplicates kept)
    """
    if not text:
        return []
    stopwords = STOPWORDS.get(detector(text), STOPWORDS[DEFAULT_LANGUAGE])
    cleaned = _NON_LETTER_PATTERN.sub("", text.lower())
    return [
        token
        for token in cleaned.split()
        if MIN_TOKEN_LENGTH <= len(token) <= MAX_TOKEN_LENGTH and token not in stopwords
    ]


# =============================================================================
# Preprocessor (URL-keyed cache)
# =============================================================================


class Preprocessor:
    """
    Builds Documents from raw rows and caches them by URL.

    The cache is only emptied by ``clear()``, either directly or through the
    memory manager. When a store is given, previously tokenized documents are
    read from it and new ones are written back (best effort).
    """

    def __init__(
        self,
        tokenizer: Callable[[str], list[str]] = tokenize,
        store: LinkStore | None = None,
        memory_manager: MemoryManager | None = None,
    ):
        self.tokenizer = tokenizer
        self.store = store
        self._cache: dict[str, Document] = {}
        self._lock = threading.Lock()
        if memory_manager is not None:
            memory_manager.register("preprocessor", self.clear)

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, url: str) -> bool:
        return url in self._cache

    def preprocess(self, url: str, body: str = "", title: str = "") -> Document:
        if not url:
            raise ValueError("URL is required for preprocessing")

        with self._lock:
            cached = self._cache.get(url)
        if cached is not None:
            return cached

        doc = self._load(url)
        if doc is None:
            doc = Document(
                url=url,
                title=title,
                body=body,
                terms=tuple(self.tokenizer(f"{title} {body}")),
            )
            self._save(doc)

        with self._lock:
            self._cache[url] = doc
        return doc

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def _load(self, url: str) -> Document | None:
        if self.store is None:
            return None
        try:
            return self.store.get_document(url)
        except Exception:
            log.exception("failed to read cached document %s", url)
            return None

    def _save(self, doc: Document) -> None:
        if self.store is None:
            return
        try:
            self.store.put_document(doc)
        except Exception:
            log.exception("failed to store document %s", doc.url)


# =============================================================================
# Module exports
# =============================================================================

__all__ = [
    "ALL_STOPWORDS",
    "STOPWORDS",
    "SUPPORTED_LANGUAGES",
    "Preprocessor",
    "detect_language",
    "tokenize",
]
