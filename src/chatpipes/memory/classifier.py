"""
Utterance classification for the memory compressor.

Classification is deliberately lexical: it has to be cheap enough to run on
every turn and deterministic so that compression passes are repeatable.
Repeat detection (jokes) needs history and is done by the compressor; this
module only looks at a single utterance.
"""

import re
from typing import Dict, List, Optional, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from chatpipes.protocol.models import MemoryCategory

_WORD_RE = re.compile(r"[a-z0-9']+")

# "X is like Y", "X feels like Y", ...
_LIKE_RE = re.compile(
    r"\b([a-z0-9'][a-z0-9' ]{0,40}?)\s+(?:is|are|was|were|feels|felt|seems|seemed|looks|sounds)\s+like\s+([^.!?,;:\n]+)",
    re.IGNORECASE
)
# "as A as B"
_AS_AS_RE = re.compile(r"\bas\s+([a-z0-9']+)\s+as\s+([^.!?,;:\n]+)", re.IGNORECASE)

EMOTION_LEXICON: Dict[str, Tuple[str, ...]] = {
    "positive": ("happy", "excited", "glad", "delighted", "love", "wonderful", "joy", "thrilled", "grateful"),
    "negative": ("sad", "worried", "afraid", "angry", "upset", "lonely", "anxious", "terrible", "frustrated"),
    "curious": ("curious", "interested", "intrigued", "fascinated", "wonder", "wondering"),
}

MOOD_MARKERS: Dict[str, Tuple[str, ...]] = {
    "funny": ("funny", "hilarious", "haha", "lol", "joke", "\U0001F602"),
    "strange": ("strange", "weird", "surreal", "bizarre", "odd"),
    "philosophical": ("philosophy", "consciousness", "existence", "meaning", "truth"),
}

FIRST_PERSON = {"i", "i'm", "i've", "i'd", "i'll", "my", "mine", "me", "we", "we're", "we've", "our", "us"}

FORMAL_MARKERS = {"therefore", "however", "furthermore", "moreover", "consequently", "thus", "indeed", "regarding", "hence"}
CASUAL_MARKERS = {"lol", "haha", "yeah", "gonna", "wanna", "hey", "cool", "kinda", "yep", "nope", "omg"}
SURREAL_MARKERS = {"surreal", "absurd", "dream", "dreams", "dreaming", "melting", "impossible", "bizarre", "weird", "uncanny"}

STOPWORDS = {
    "the", "and", "for", "are", "but", "not", "you", "all", "any", "can", "had", "her", "was", "one",
    "our", "out", "has", "have", "his", "how", "its", "may", "new", "now", "old", "see", "way", "who",
    "did", "get", "let", "say", "she", "too", "use", "that", "with", "this", "from", "they", "will",
    "would", "there", "their", "what", "about", "which", "when", "make", "like", "than", "then",
    "them", "been", "were", "into", "just", "also", "some", "very", "really", "i'm", "i've", "i'd",
    "i'll", "mine", "we're", "we've", "it's"
}


def tokenize(text: str) -> List[str]:
    """Lowercased word tokens, apostrophes kept."""
    return _WORD_RE.findall(text.lower())


def keywords(texts: List[str], limit: int = 5) -> List[str]:
    """Most frequent content words across ``texts``, ties broken by first appearance."""
    counts: Dict[str, int] = {}
    for text in texts:
        for token in tokenize(text):
            if len(token) > 2 and token not in STOPWORDS:
                counts[token] = counts.get(token, 0) + 1
    ranked = sorted(counts.items(), key=lambda kv: -kv[1])
    return [word for word, _ in ranked[:limit]]


def detect_mood(text: str) -> Optional[str]:
    """Tag a joke as funny, strange or philosophical when the wording says so."""
    lowered = text.lower()
    for mood, markers in MOOD_MARKERS.items():
        if any(marker in lowered for marker in markers):
            return mood
    return None


class UtteranceLabel(BaseModel):
    """Classification result for one raw utterance."""

    model_config = ConfigDict(frozen=True)

    category: MemoryCategory = Field(..., description="Category the utterance feeds")
    tone: Optional[str] = Field(None, description="Emotion tone label")
    intensity: float = Field(default=0.0, ge=0.0, le=1.0, description="Emotion intensity")
    motif_key: Optional[str] = Field(None, description="Normalized grouping key for a motif")
    motif_phrase: Optional[str] = Field(None, description="Comparative phrase as written")
    mood: Optional[str] = Field(None, description="Joke mood tag")


class UtteranceClassifier:
    """
    Assigns each utterance a memory category and observes its style.

    Precedence: comparative structure (motif), sentiment (emotion),
    first-person declarative (fact), otherwise style-only. Jokes are assigned
    by the caller, which knows the participant's history.
    """

    def classify(self, text: str) -> UtteranceLabel:
        motif = self.detect_motif(text)
        if motif is not None:
            key, phrase = motif
            return UtteranceLabel(category=MemoryCategory.MOTIF, motif_key=key, motif_phrase=phrase)

        emotion = self.detect_emotion(text)
        if emotion is not None:
            tone, intensity = emotion
            return UtteranceLabel(category=MemoryCategory.EMOTION, tone=tone, intensity=intensity)

        if self.is_fact(text):
            return UtteranceLabel(category=MemoryCategory.FACT)

        return UtteranceLabel(category=MemoryCategory.STYLE)

    def joke(self, text: str) -> UtteranceLabel:
        return UtteranceLabel(category=MemoryCategory.JOKE, mood=detect_mood(text))

    def detect_motif(self, text: str) -> Optional[Tuple[str, str]]:
        """
        Find a comparative phrase.

        Returns:
            (normalized key, phrase as written) or None
        """
        match = _LIKE_RE.search(text) or _AS_AS_RE.search(text)
        if match is None:
            return None
        phrase = " ".join(match.group(0).split())
        key = " ".join(tokenize(phrase))
        if not key:
            return None
        return key, phrase

    def detect_emotion(self, text: str) -> Optional[Tuple[str, float]]:
        """
        Find the dominant sentiment tone.

        Returns:
            (tone, intensity) or None when no sentiment word is present
        """
        tokens = tokenize(text)
        best_tone = None
        best_hits = 0
        for tone, words in EMOTION_LEXICON.items():
            hits = sum(1 for token in tokens if token in words)
            if hits > best_hits:
                best_tone, best_hits = tone, hits
        if best_tone is None:
            return None

        intensity = 0.4 + 0.2 * best_hits
        if "!" in text:
            intensity += 0.1
        return best_tone, round(min(1.0, intensity), 6)

    def is_fact(self, text: str) -> bool:
        """First-person declarative statement."""
        stripped = text.strip()
        if stripped.endswith("?"):
            return False
        return any(token in FIRST_PERSON for token in tokenize(stripped))

    def observe_style(self, text: str) -> np.ndarray:
        """
        Measure one utterance along the StyleVector dimensions.

        Returns:
            Array ordered as ``StyleVector.DIMENSIONS``
        """
        tokens = tokenize(text)
        word_count = len(tokens)

        verbosity = min(1.0, word_count / 60.0)
        metaphor = 1.0 if self.detect_motif(text) is not None else 0.0

        formal_hits = sum(1 for token in tokens if token in FORMAL_MARKERS)
        casual_hits = sum(1 for token in tokens if token in CASUAL_MARKERS)
        casual_hits += sum(1 for token in tokens if "'" in token)
        formality = 0.5 + 0.15 * formal_hits - 0.15 * casual_hits

        creativity = len(set(tokens)) / word_count if word_count else 0.5

        surreal_hits = sum(1 for token in tokens if token in SURREAL_MARKERS)
        surrealism = min(1.0, 0.5 * surreal_hits)

        return np.clip(np.array([verbosity, metaphor, formality, creativity, surrealism], dtype=float), 0.0, 1.0)
