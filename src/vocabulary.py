"""Top-K hashtag and skill vocabularies"""

import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from config import (
    HASHTAG_VOCAB_KEY,
    HASHTAG_VOCAB_SIZE,
    SKILL_VOCAB_KEY,
    SKILL_VOCAB_SIZE,
    VOCAB_CACHE_TTL,
)
from utils import normalize_term

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Vocabulary:
    """Immutable term -> slot mapping; slots are 0..len-1 in rank order"""

    slots: Dict[str, int] = field(default_factory=dict)
    epoch: str = ""

    def __len__(self) -> int:
        return len(self.slots)

    def index(self, term: str) -> Optional[int]:
        return self.slots.get(normalize_term(term))

    def to_payload(self) -> Dict:
        return {"epoch": self.epoch, "entries": sorted(self.slots.items(), key=lambda kv: kv[1])}

    @classmethod
    def from_payload(cls, payload: Dict) -> "Vocabulary":
        return cls(slots={term: int(idx) for term, idx in payload["entries"]}, epoch=payload["epoch"])

    @classmethod
    def from_corpus(cls, term_lists: Iterable[List[str]], size: int) -> "Vocabulary":
        """Count normalized terms and keep the `size` most frequent.

        Counter.most_common orders equal counts by first encounter.
        """
        counts = Counter()
        for terms in term_lists:
            for term in terms or []:
                normalized = normalize_term(term)
                if normalized:
                    counts[normalized] += 1

        slots = {term: idx for idx, (term, _) in enumerate(counts.most_common(size))}
        return cls(slots=slots, epoch=uuid.uuid4().hex)


def combined_epoch(hashtags: Vocabulary, skills: Vocabulary) -> str:
    return f"{hashtags.epoch}:{skills.epoch}"


class VocabularyService:
    def __init__(self, store, cache):
        self.store = store
        self.cache = cache
        # (hashtags, skills), replaced by one assignment so readers never see a mixed pair
        self._resident: Optional[Tuple[Vocabulary, Vocabulary]] = None

    def _load_or_build(self, key: str, size: int, corpus_fn) -> Vocabulary:
        hit, payload = self.cache.try_get(key)
        if hit:
            try:
                return Vocabulary.from_payload(payload)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Ignoring malformed vocabulary cache entry {key}: {e}")

        vocab = Vocabulary.from_corpus(corpus_fn(), size)
        self.cache.try_set(key, vocab.to_payload(), VOCAB_CACHE_TTL)
        logger.info(f"Built vocabulary {key}: {len(vocab)} terms (epoch {vocab.epoch[:8]})")
        return vocab

    def build_hashtag_vocabulary(self) -> Vocabulary:
        return self._load_or_build(HASHTAG_VOCAB_KEY, HASHTAG_VOCAB_SIZE, self.store.get_all_post_hashtags)

    def build_skill_vocabulary(self) -> Vocabulary:
        return self._load_or_build(SKILL_VOCAB_KEY, SKILL_VOCAB_SIZE, self.store.get_all_user_skills)

    def rebuild_all(self) -> Tuple[Vocabulary, Vocabulary]:
        """Drop cached vocabularies and rebuild both from the corpus"""
        self.cache.delete(HASHTAG_VOCAB_KEY, SKILL_VOCAB_KEY)
        hashtags = Vocabulary.from_corpus(self.store.get_all_post_hashtags(), HASHTAG_VOCAB_SIZE)
        skills = Vocabulary.from_corpus(self.store.get_all_user_skills(), SKILL_VOCAB_SIZE)
        self.cache.try_set(HASHTAG_VOCAB_KEY, hashtags.to_payload(), VOCAB_CACHE_TTL)
        self.cache.try_set(SKILL_VOCAB_KEY, skills.to_payload(), VOCAB_CACHE_TTL)

        # Swap both only once both builds succeeded
        self._resident = (hashtags, skills)
        logger.info(f"Rebuilt vocabularies: {len(hashtags)} hashtags, {len(skills)} skills")
        return hashtags, skills

    def get_vocabularies(self) -> Tuple[Vocabulary, Vocabulary]:
        """The resident pair, built lazily; callers derive the epoch from this same pair"""
        resident = self._resident
        if resident is None:
            resident = (self.build_hashtag_vocabulary(), self.build_skill_vocabulary())
            self._resident = resident
        return resident

    @property
    def epoch(self) -> str:
        return combined_epoch(*self.get_vocabularies())
