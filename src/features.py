"""
Feature vectors for users and posts.

User (196): [hashtag_interest(128) | skill_profile(64) | engagement(4)]
Post (197): [hashtag_presence(128) | author_skills(64) | meta(5)]

Both are L2-normalized. Cached vectors carry the vocabulary epoch they were
built under and are ignored once the vocabularies are rebuilt.
"""

import logging
import math
import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence

import numpy as np

from config import (
    ACTIVITY_PLACEHOLDER,
    FEATURE_CACHE_TTL,
    FEATURE_WORKERS,
    HASHTAG_VOCAB_SIZE,
    POST_FEATURE_PREFIX,
    POST_VECTOR_DIM,
    RECENCY_DECAY_HOURS,
    SKILL_VOCAB_SIZE,
    USER_FEATURE_PREFIX,
    USER_HISTORY_LIMIT,
    USER_VECTOR_DIM,
    interaction_weights,
    post_meta_norms,
    user_engagement_norms,
)
from utils import clamp_ratio, hours_since, l2_normalize, normalize_term
from vocabulary import Vocabulary, combined_epoch

logger = logging.getLogger(__name__)


def _multi_hot(terms: Sequence[str], vocab: Vocabulary, size: int) -> np.ndarray:
    vec = np.zeros(size, dtype=np.float32)
    for term in terms or []:
        idx = vocab.index(term)
        if idx is not None:
            vec[idx] = 1.0
    return vec


class FeatureService:
    def __init__(self, store, cache, vocabulary, max_workers: int = FEATURE_WORKERS,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Args:
            store: FeedStore implementation
            cache: Cache with try_get / try_set / delete
            vocabulary: VocabularyService
            max_workers: Thread pool size for batch post vectorization
            clock: Returns the current UTC time (injectable for tests)
        """
        self.store = store
        self.cache = cache
        self.vocabulary = vocabulary
        self.max_workers = max(1, max_workers)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Cache helpers
    # ------------------------------------------------------------------

    def _cached_vector(self, key: str, epoch: str, dim: int) -> Optional[np.ndarray]:
        hit, payload = self.cache.try_get(key)
        if not hit:
            return None
        if not isinstance(payload, dict) or payload.get("epoch") != epoch:
            logger.debug(f"Stale feature vector for {key}, recomputing")
            return None
        vector = np.asarray(payload.get("vector", []), dtype=np.float32)
        if vector.shape != (dim,):
            logger.warning(f"Cached vector {key} has shape {vector.shape}, expected ({dim},)")
            return None
        return vector

    def _store_vector(self, key: str, epoch: str, vector: np.ndarray):
        self.cache.try_set(key, {"epoch": epoch, "vector": vector.tolist()}, FEATURE_CACHE_TTL)

    # ------------------------------------------------------------------
    # User vectors
    # ------------------------------------------------------------------

    def hashtag_interest(self, user_id: str, vocab: Vocabulary) -> np.ndarray:
        """Interaction-weighted hashtag counts scaled so the strongest is 1.0"""
        counts = defaultdict(float)
        for hashtags in self.store.get_liked_post_hashtags(user_id, USER_HISTORY_LIMIT):
            for tag in hashtags:
                counts[normalize_term(tag)] += interaction_weights["like"]
        for hashtags in self.store.get_commented_post_hashtags(user_id, USER_HISTORY_LIMIT):
            for tag in hashtags:
                counts[normalize_term(tag)] += interaction_weights["comment"]

        vec = np.zeros(HASHTAG_VOCAB_SIZE, dtype=np.float32)
        max_count = max(counts.values(), default=0.0)
        if max_count <= 0:
            return vec

        for tag, count in counts.items():
            idx = vocab.index(tag)
            if idx is not None:
                vec[idx] = count / max_count
        return vec

    def engagement_features(self, user_id: str) -> np.ndarray:
        counts = self.store.get_user_activity_counts(user_id)
        return np.array([
            clamp_ratio(counts.get("likes", 0), user_engagement_norms["likes_given"]),
            clamp_ratio(counts.get("comments", 0), user_engagement_norms["comments_made"]),
            ACTIVITY_PLACEHOLDER,
            clamp_ratio(counts.get("posts", 0), user_engagement_norms["posts_authored"]),
        ], dtype=np.float32)

    def build_user_vector(self, user_id: str) -> np.ndarray:
        hashtag_vocab, skill_vocab = self.vocabulary.get_vocabularies()
        epoch = combined_epoch(hashtag_vocab, skill_vocab)
        key = f"{USER_FEATURE_PREFIX}{user_id}"

        cached = self._cached_vector(key, epoch, USER_VECTOR_DIM)
        if cached is not None:
            return cached

        skills = self.store.get_user_skills(user_id) or []
        raw = np.concatenate([
            self.hashtag_interest(user_id, hashtag_vocab),
            _multi_hot(skills, skill_vocab, SKILL_VOCAB_SIZE),
            self.engagement_features(user_id),
        ])
        vector = l2_normalize(raw)

        self._store_vector(key, epoch, vector)
        return vector

    # ------------------------------------------------------------------
    # Post vectors
    # ------------------------------------------------------------------

    def post_meta_features(self, row: dict) -> np.ndarray:
        hours = hours_since(row.get("created_at"), self.clock())
        return np.array([
            clamp_ratio(row.get("like_count", 0), post_meta_norms["like_count"]),
            clamp_ratio(row.get("comment_count", 0), post_meta_norms["comment_count"]),
            clamp_ratio(row.get("view_count", 0), post_meta_norms["view_count"]),
            math.exp(-hours / RECENCY_DECAY_HOURS),
            clamp_ratio(row.get("author_follower_count", 0), post_meta_norms["author_follower_count"]),
        ], dtype=np.float32)

    def _build_post_vector(self, post_id: str, hashtag_vocab: Vocabulary,
                           skill_vocab: Vocabulary, epoch: str) -> np.ndarray:
        key = f"{POST_FEATURE_PREFIX}{post_id}"
        cached = self._cached_vector(key, epoch, POST_VECTOR_DIM)
        if cached is not None:
            return cached

        row = self.store.get_post_feature_row(post_id)
        if row is None:
            # Deleted or unknown post: zero vector, not cached
            return np.zeros(POST_VECTOR_DIM, dtype=np.float32)

        raw = np.concatenate([
            _multi_hot(row.get("hashtags"), hashtag_vocab, HASHTAG_VOCAB_SIZE),
            _multi_hot(row.get("author_skills"), skill_vocab, SKILL_VOCAB_SIZE),
            self.post_meta_features(row),
        ])
        vector = l2_normalize(raw)

        self._store_vector(key, epoch, vector)
        return vector

    def build_post_vector(self, post_id: str) -> np.ndarray:
        hashtag_vocab, skill_vocab = self.vocabulary.get_vocabularies()
        return self._build_post_vector(post_id, hashtag_vocab, skill_vocab,
                                       combined_epoch(hashtag_vocab, skill_vocab))

    def build_post_vectors(self, post_ids: Sequence[str]) -> List[np.ndarray]:
        """Vectorize a batch in parallel; output order matches post_ids"""
        if not post_ids:
            return []

        start = time.time()
        hashtag_vocab, skill_vocab = self.vocabulary.get_vocabularies()
        epoch = combined_epoch(hashtag_vocab, skill_vocab)

        workers = min(self.max_workers, len(post_ids))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            vectors = list(executor.map(
                lambda pid: self._build_post_vector(pid, hashtag_vocab, skill_vocab, epoch),
                post_ids,
            ))

        logger.debug(f"Vectorized {len(post_ids)} posts in {time.time() - start:.3f}s")
        return vectors

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate_user(self, user_id: str):
        self.cache.delete(f"{USER_FEATURE_PREFIX}{user_id}")

    def invalidate_post(self, post_id: str):
        self.cache.delete(f"{POST_FEATURE_PREFIX}{post_id}")

    def invalidate_posts(self, post_ids: Sequence[str]):
        if post_ids:
            self.cache.delete(*[f"{POST_FEATURE_PREFIX}{pid}" for pid in post_ids])

    def on_like(self, user_id: str, post_id: str):
        """Likes change the liker's history and the post's like count"""
        self.invalidate_user(user_id)
        self.invalidate_post(post_id)

    def on_comment(self, user_id: str, post_id: str):
        self.invalidate_user(user_id)
        self.invalidate_post(post_id)

    def on_post_created(self, author_id: str, post_id: str):
        """A new post changes the author's posting-frequency feature"""
        self.invalidate_user(author_id)
        self.invalidate_post(post_id)

    def on_post_viewed(self, post_id: str):
        self.invalidate_post(post_id)

    def on_follow(self, follower_id: str, followee_id: str):
        """Follower count is part of every post vector the followee authored"""
        self.invalidate_posts(self.store.get_post_ids_by_author(followee_id))

    def on_skills_changed(self, user_id: str):
        """Skills feed the user's vector and the author segment of their posts"""
        self.invalidate_user(user_id)
        self.invalidate_posts(self.store.get_post_ids_by_author(user_id))
