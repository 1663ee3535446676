import json
import random
from datetime import datetime, timedelta, timezone

import pytest

from features import FeatureService
from ranking_model import ModelService
from service import RecommendationService
from store import FeedStore
from vocabulary import VocabularyService

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeStore(FeedStore):
    """In-memory FeedStore over users, posts, likes, comments and follows"""

    def __init__(self):
        self.users = {}
        self.posts = {}
        self.likes = []  # (user_id, post_id, created_at)
        self.comments = []  # (user_id, post_id, created_at)
        self.follows = []  # (follower_id, following_id)
        self.calls = []

    # Builders

    def add_user(self, user_id, skills=None, created_at=None):
        self.users[user_id] = {
            "id": user_id,
            "username": user_id,
            "displayName": user_id.title(),
            "avatar": None,
            "skills": list(skills or []),
            "created_at": created_at or NOW - timedelta(days=365),
        }
        return user_id

    def add_post(self, post_id, author_id, hashtags=None, hours_ago=1.0, views=0):
        if author_id not in self.users:
            self.add_user(author_id)
        self.posts[post_id] = {
            "id": post_id,
            "authorId": author_id,
            "content": f"post {post_id}",
            "hashtags": list(hashtags or []),
            "views": views,
            "createdAt": NOW - timedelta(hours=hours_ago),
        }
        return post_id

    def like(self, user_id, post_id, hours_ago=0.5):
        if user_id not in self.users:
            self.add_user(user_id)
        self.likes.append((user_id, post_id, NOW - timedelta(hours=hours_ago)))

    def comment(self, user_id, post_id, hours_ago=0.5):
        if user_id not in self.users:
            self.add_user(user_id)
        self.comments.append((user_id, post_id, NOW - timedelta(hours=hours_ago)))

    def follow(self, follower_id, following_id):
        self.follows.append((follower_id, following_id))

    # Helpers

    def _newest_first(self, posts):
        return sorted(posts, key=lambda p: p["createdAt"], reverse=True)

    def _like_count(self, post_id):
        return sum(1 for _, pid, _ in self.likes if pid == post_id)

    def _comment_count(self, post_id):
        return sum(1 for _, pid, _ in self.comments if pid == post_id)

    def _history_hashtags(self, rows, user_id, limit):
        mine = sorted((r for r in rows if r[0] == user_id), key=lambda r: r[2], reverse=True)[:limit]
        return [list(self.posts[pid]["hashtags"]) for _, pid, _ in mine if pid in self.posts]

    # FeedStore

    def get_all_post_hashtags(self):
        return [list(p["hashtags"]) for p in sorted(self.posts.values(), key=lambda p: p["createdAt"])]

    def get_all_user_skills(self):
        return [list(u["skills"]) for u in sorted(self.users.values(), key=lambda u: u["created_at"])]

    def get_liked_post_hashtags(self, user_id, limit):
        return self._history_hashtags(self.likes, user_id, limit)

    def get_commented_post_hashtags(self, user_id, limit):
        return self._history_hashtags(self.comments, user_id, limit)

    def get_user_skills(self, user_id):
        user = self.users.get(user_id)
        return list(user["skills"]) if user else None

    def get_user_activity_counts(self, user_id):
        return {
            "likes": sum(1 for uid, _, _ in self.likes if uid == user_id),
            "comments": sum(1 for uid, _, _ in self.comments if uid == user_id),
            "posts": sum(1 for p in self.posts.values() if p["authorId"] == user_id),
        }

    def get_post_feature_row(self, post_id):
        self.calls.append(("get_post_feature_row", post_id))
        post = self.posts.get(post_id)
        if post is None:
            return None
        return {
            "id": post_id,
            "hashtags": list(post["hashtags"]),
            "author_skills": list(self.users[post["authorId"]]["skills"]),
            "like_count": self._like_count(post_id),
            "comment_count": self._comment_count(post_id),
            "view_count": post["views"],
            "created_at": post["createdAt"],
            "author_follower_count": sum(1 for _, f in self.follows if f == post["authorId"]),
        }

    def count_post_likes(self, user_id):
        return sum(1 for uid, _, _ in self.likes if uid == user_id)

    def get_liked_post_ids(self, user_id, limit=None):
        mine = sorted((r for r in self.likes if r[0] == user_id), key=lambda r: r[2], reverse=True)
        ids = [pid for _, pid, _ in mine]
        return ids[:limit] if limit is not None else ids

    def get_users_with_post_likes(self):
        return sorted({uid for uid, _, _ in self.likes})

    def get_liked_among(self, user_id, post_ids):
        wanted = set(post_ids)
        return {pid for uid, pid, _ in self.likes if uid == user_id and pid in wanted}

    def get_recent_post_ids(self, exclude_author_id, exclude_post_ids=(), limit=200, since=None):
        excluded = set(exclude_post_ids)
        posts = [
            p for p in self.posts.values()
            if p["authorId"] != exclude_author_id and p["id"] not in excluded
            and (since is None or p["createdAt"] >= since)
        ]
        return [p["id"] for p in self._newest_first(posts)][:limit]

    def get_heuristic_candidates(self, user_id, since, limit):
        posts = [
            p for p in self.posts.values()
            if p["authorId"] != user_id and p["createdAt"] >= since
        ]
        return [
            {
                "id": p["id"],
                "hashtags": list(p["hashtags"]),
                "created_at": p["createdAt"],
                "author_skills": list(self.users[p["authorId"]]["skills"]),
                "like_count": self._like_count(p["id"]),
                "comment_count": self._comment_count(p["id"]),
            }
            for p in self._newest_first(posts)[:limit]
        ]

    def get_post_authors(self, post_ids):
        self.calls.append(("get_post_authors", tuple(post_ids)))
        return {pid: self.posts[pid]["authorId"] for pid in post_ids if pid in self.posts}

    def get_posts(self, post_ids):
        records = []
        for pid in post_ids:
            post = self.posts.get(pid)
            if post is None:
                continue
            author = self.users[post["authorId"]]
            record = dict(post)
            record["author"] = {
                "id": author["id"],
                "username": author["username"],
                "displayName": author["displayName"],
                "avatar": author["avatar"],
            }
            record["_count"] = {"likes": self._like_count(pid), "comments": self._comment_count(pid)}
            records.append(record)
        return records

    def get_post_ids_by_author(self, author_id):
        return [p["id"] for p in self.posts.values() if p["authorId"] == author_id]


class FakeCache:
    """Dict-backed cache with the same JSON round trip as RedisCache"""

    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.deleted = []

    def try_get(self, key):
        if key not in self.data:
            return False, None
        return True, json.loads(self.data[key])

    def try_set(self, key, value, ttl_seconds):
        self.data[key] = json.dumps(value, default=str)
        self.ttls[key] = ttl_seconds
        return True

    def delete(self, *keys):
        for key in keys:
            self.deleted.append(key)
            self.data.pop(key, None)
            self.ttls.pop(key, None)
        return True


class UnavailableCache:
    """Cache whose backend is down: every call fails softly"""

    def try_get(self, key):
        return False, None

    def try_set(self, key, value, ttl_seconds):
        return False

    def delete(self, *keys):
        return False


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def cache():
    return FakeCache()


@pytest.fixture
def vocabulary(store, cache):
    return VocabularyService(store, cache)


@pytest.fixture
def features(store, cache, vocabulary):
    return FeatureService(store, cache, vocabulary, max_workers=4, clock=lambda: NOW)


@pytest.fixture
def model(tmp_path):
    return ModelService(model_dir=str(tmp_path / "models"), epochs=3, batch_size=8, seed=7, device="cpu")


@pytest.fixture
def service(store, cache, features, model):
    return RecommendationService(store, cache, features, model, rng=random.Random(42), clock=lambda: NOW)


@pytest.fixture
def populated_store(store):
    """Five authors with two fresh posts each plus a reader 'alice' who likes a few"""
    store.add_user("alice", skills=["Python", "React"])
    for a in range(5):
        author = store.add_user(f"author{a}", skills=["python"] if a % 2 == 0 else ["go"])
        for n in range(2):
            store.add_post(f"p{a}{n}", author, hashtags=["#python", f"#tag{a}"], hours_ago=a * 2 + n + 1)
    return store
