"""Service layer for the recommended feed"""

import logging
import math
import random
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence, Set

from config import (
    FEED_CACHE_PREFIX,
    FEED_CACHE_TTL,
    RECENCY_BONUS_DECAY_PER_HOUR,
    RECENCY_BONUS_MAX,
    RECOMMENDATION_CONFIG,
    TRAINING_CONFIG,
    heuristic_weights,
)
from utils import hours_since, normalize_term

logger = logging.getLogger(__name__)

SOURCE_ML = "ml"
SOURCE_HEURISTIC = "heuristic"
SOURCE_EXPLORATION = "exploration"


@dataclass
class RecommendationResult:
    post_id: str
    score: float
    source: str


@dataclass
class RecommendationStatus:
    model_trained: bool
    last_trained_at: Optional[str]
    total_training_examples: int
    user_interaction_count: int
    using_ml_recommendations: bool

    def to_json(self) -> Dict:
        """camelCase view for API clients"""
        return {
            "modelTrained": self.model_trained,
            "lastTrainedAt": self.last_trained_at,
            "totalTrainingExamples": self.total_training_examples,
            "userInteractionCount": self.user_interaction_count,
            "usingMLRecommendations": self.using_ml_recommendations,
        }


def heuristic_score(post: Dict, user_skills: Set[str], now: datetime) -> float:
    """Engagement + skill overlap + hashtag count + linearly decaying recency bonus"""
    author_skills = [normalize_term(s) for s in post.get("author_skills") or []]
    skill_overlap = sum(1 for s in author_skills if s in user_skills)
    hours = hours_since(post.get("created_at"), now)

    score = 0.0
    score += post.get("like_count", 0) * heuristic_weights["like"]
    score += post.get("comment_count", 0) * heuristic_weights["comment"]
    score += skill_overlap * heuristic_weights["skill_overlap"]
    score += len(post.get("hashtags") or []) * heuristic_weights["hashtag"]
    score += max(0.0, RECENCY_BONUS_MAX - hours * RECENCY_BONUS_DECAY_PER_HOUR)
    return score


def _jsonable(record: Dict) -> Dict:
    return {k: (v.isoformat() if isinstance(v, datetime) else v) for k, v in record.items()}


class RecommendationService:
    def __init__(self, store, cache, features, model,
                 rng: Optional[random.Random] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Args:
            store: FeedStore implementation
            cache: Cache with try_get / try_set / delete
            features: FeatureService
            model: ModelService
            rng: Random source for exploration (seed it for reproducible feeds)
            clock: Returns the current UTC time (injectable for tests)
        """
        self.store = store
        self.cache = cache
        self.features = features
        self.model = model
        self.rng = rng or random.Random()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self.min_interactions = TRAINING_CONFIG["min_interactions_for_ml"]
        self.max_posts_per_author = RECOMMENDATION_CONFIG["max_posts_per_author"]
        self.exploration_rate = RECOMMENDATION_CONFIG["exploration_rate"]
        self.exploration_oversample = RECOMMENDATION_CONFIG["exploration_oversample"]
        self.candidate_pool_size = RECOMMENDATION_CONFIG["candidate_pool_size"]
        self.heuristic_window = timedelta(days=RECOMMENDATION_CONFIG["heuristic_window_days"])

    # ------------------------------------------------------------------
    # Feed
    # ------------------------------------------------------------------

    def _uses_ml(self, interaction_count: int) -> bool:
        return interaction_count >= self.min_interactions and self.model.is_model_trained()

    def get_recommended_feed(self, user_id: str, page: int = 1,
                             limit: int = RECOMMENDATION_CONFIG["default_limit"]) -> Dict:
        """
        Returns:
            {"posts": [...], "total": int, "page": int, "limit": int}
        """
        if page < 1 or limit < 1:
            raise ValueError("page and limit must be positive")

        cache_key = f"{FEED_CACHE_PREFIX}{user_id}:{page}:{limit}"
        hit, cached = self.cache.try_get(cache_key)
        if hit:
            return cached

        start_time = time.time()
        interaction_count = self.store.count_post_likes(user_id)

        if self._uses_ml(interaction_count):
            recommendations = self.ml_recommendations(user_id)
        else:
            recommendations = self.heuristic_recommendations(user_id)

        diversified = self.enforce_diversity(recommendations)
        ranked = self.inject_exploration(diversified, user_id)

        total = len(ranked)
        page_results = ranked[(page - 1) * limit:page * limit]
        posts = self._hydrate(user_id, page_results)

        result = {"posts": posts, "total": total, "page": page, "limit": limit}
        self.cache.try_set(cache_key, result, FEED_CACHE_TTL)

        logger.info(f"Feed for user {user_id}: {total} ranked, page {page} -> {len(posts)} posts "
                    f"in {time.time() - start_time:.3f}s")
        return result

    def ml_recommendations(self, user_id: str) -> List[RecommendationResult]:
        user_vector = self.features.build_user_vector(user_id)

        liked_ids = self.store.get_liked_post_ids(user_id)
        candidates = self.store.get_recent_post_ids(
            exclude_author_id=user_id,
            exclude_post_ids=liked_ids,
            limit=self.candidate_pool_size,
        )
        if not candidates:
            return []

        post_vectors = self.features.build_post_vectors(candidates)
        scores = self.model.predict(user_vector, post_vectors)

        results = [
            RecommendationResult(post_id=pid, score=float(score), source=SOURCE_ML)
            for pid, score in zip(candidates, scores)
        ]
        # sorted() is stable: equal scores keep candidate (recency) order
        return sorted(results, key=lambda r: r.score, reverse=True)

    def heuristic_recommendations(self, user_id: str) -> List[RecommendationResult]:
        """Cold-start ranking over the last week's posts"""
        now = self.clock()
        user_skills = {normalize_term(s) for s in self.store.get_user_skills(user_id) or []}
        posts = self.store.get_heuristic_candidates(
            user_id, since=now - self.heuristic_window, limit=self.candidate_pool_size
        )

        results = [
            RecommendationResult(post_id=post["id"], score=heuristic_score(post, user_skills, now),
                                 source=SOURCE_HEURISTIC)
            for post in posts
        ]
        return sorted(results, key=lambda r: r.score, reverse=True)

    def enforce_diversity(self, recommendations: Sequence[RecommendationResult]) -> List[RecommendationResult]:
        """Greedy pass keeping at most max_posts_per_author per author"""
        authors = self.store.get_post_authors([r.post_id for r in recommendations])
        author_counts = defaultdict(int)
        diversified = []

        for rec in recommendations:
            author_id = authors.get(rec.post_id)
            if author_id is None:
                continue
            if author_counts[author_id] < self.max_posts_per_author:
                diversified.append(rec)
                author_counts[author_id] += 1

        return diversified

    def exploration_count(self, n: int) -> int:
        # round() guards against float error, e.g. 30 * 0.1 == 3.0000000000000004
        return math.ceil(round(n * self.exploration_rate, 9))

    def inject_exploration(self, recommendations: Sequence[RecommendationResult],
                           user_id: str) -> List[RecommendationResult]:
        """Interleave randomly chosen recent posts at roughly even intervals"""
        result = list(recommendations)
        count = self.exploration_count(len(result))
        if count == 0:
            return result

        pool = self.store.get_recent_post_ids(
            exclude_author_id=user_id,
            exclude_post_ids=[r.post_id for r in result],
            limit=count * self.exploration_oversample,
        )
        selected = self.rng.sample(pool, min(count, len(pool)))
        if not selected:
            return result

        step = max(1, len(result) // (len(selected) + 1))
        for i, post_id in enumerate(selected):
            insert_idx = min((i + 1) * step, len(result))
            result.insert(insert_idx, RecommendationResult(post_id=post_id, score=0.0, source=SOURCE_EXPLORATION))

        return result

    def _hydrate(self, user_id: str, page_results: Sequence[RecommendationResult]) -> List[Dict]:
        """Full post records in ranking order with the requester's like status"""
        post_ids = [r.post_id for r in page_results]
        if not post_ids:
            return []

        posts_by_id = {post["id"]: post for post in self.store.get_posts(post_ids)}
        liked = self.store.get_liked_among(user_id, post_ids)

        hydrated = []
        for rec in page_results:
            post = posts_by_id.get(rec.post_id)
            if post is None:
                continue
            record = _jsonable(post)
            record["isLiked"] = rec.post_id in liked
            record["recommendation"] = {"score": rec.score, "source": rec.source}
            hydrated.append(record)
        return hydrated

    # ------------------------------------------------------------------
    # Status & cache coherence
    # ------------------------------------------------------------------

    def get_status(self, user_id: str) -> RecommendationStatus:
        interaction_count = self.store.count_post_likes(user_id)
        last_trained_at = self.model.get_last_trained_at()
        return RecommendationStatus(
            model_trained=self.model.is_model_trained(),
            last_trained_at=last_trained_at.isoformat() if last_trained_at else None,
            total_training_examples=self.model.get_total_training_examples(),
            user_interaction_count=interaction_count,
            using_ml_recommendations=self._uses_ml(interaction_count),
        )

    def invalidate_user(self, user_id: str):
        self.features.invalidate_user(user_id)

    def invalidate_post(self, post_id: str):
        self.features.invalidate_post(post_id)

    def process_events(self, events: List[Dict]) -> int:
        """
        Apply mutation events from collaborators to the feature caches.

        Event shapes:
            {"event_type": "like" | "unlike" | "comment", "user_id", "post_id"}
            {"event_type": "post_created", "user_id", "post_id"}
            {"event_type": "post_updated" | "post_deleted" | "view", "post_id"}
            {"event_type": "follow" | "unfollow", "user_id", "target_user_id"}
            {"event_type": "skills_updated", "user_id"}

        Returns:
            Number of events applied
        """
        handlers = {
            "like": lambda e: self.features.on_like(e["user_id"], e["post_id"]),
            "unlike": lambda e: self.features.on_like(e["user_id"], e["post_id"]),
            "comment": lambda e: self.features.on_comment(e["user_id"], e["post_id"]),
            "post_created": lambda e: self.features.on_post_created(e["user_id"], e["post_id"]),
            "post_updated": lambda e: self.features.invalidate_post(e["post_id"]),
            "post_deleted": lambda e: self.features.invalidate_post(e["post_id"]),
            "view": lambda e: self.features.on_post_viewed(e["post_id"]),
            "follow": lambda e: self.features.on_follow(e["user_id"], e["target_user_id"]),
            "unfollow": lambda e: self.features.on_follow(e["user_id"], e["target_user_id"]),
            "skills_updated": lambda e: self.features.on_skills_changed(e["user_id"]),
        }

        applied = 0
        for event in events:
            event_type = (event.get("event_type") or "").lower()
            handler = handlers.get(event_type)
            if handler is None:
                logger.warning(f"Skipping event with unknown type: {event}")
                continue
            try:
                handler(event)
            except KeyError as e:
                logger.warning(f"Skipping event {event}, missing field {e}")
                continue
            applied += 1

        return applied
