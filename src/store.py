"""
Read access to the relational store.

FeedStore lists every query the recommendation engine makes; PostgresStore
implements them over the application schema (tables "User", "Post", "Like",
"Comment", "Follow"). Failures surface as StoreError so the HTTP layer can
turn them into request errors.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Set

import psycopg2
from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

from config import DATABASE_URL, DB_POOL_SIZE

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when the relational store cannot answer a query"""


class FeedStore:
    """Queries consumed by the recommendation engine"""

    # Corpus scans (vocabulary)
    def get_all_post_hashtags(self) -> List[List[str]]:
        raise NotImplementedError

    def get_all_user_skills(self) -> List[List[str]]:
        raise NotImplementedError

    # User history (user vectors)
    def get_liked_post_hashtags(self, user_id: str, limit: int) -> List[List[str]]:
        raise NotImplementedError

    def get_commented_post_hashtags(self, user_id: str, limit: int) -> List[List[str]]:
        raise NotImplementedError

    def get_user_skills(self, user_id: str) -> Optional[List[str]]:
        raise NotImplementedError

    def get_user_activity_counts(self, user_id: str) -> Dict[str, int]:
        """{'likes': .., 'comments': .., 'posts': ..}"""
        raise NotImplementedError

    # Post engagement (post vectors)
    def get_post_feature_row(self, post_id: str) -> Optional[Dict]:
        """hashtags, author_skills, like_count, comment_count, view_count,
        created_at, author_follower_count; None if the post does not exist"""
        raise NotImplementedError

    # Interactions
    def count_post_likes(self, user_id: str) -> int:
        raise NotImplementedError

    def get_liked_post_ids(self, user_id: str, limit: Optional[int] = None) -> List[str]:
        raise NotImplementedError

    def get_users_with_post_likes(self) -> List[str]:
        raise NotImplementedError

    def get_liked_among(self, user_id: str, post_ids: Sequence[str]) -> Set[str]:
        raise NotImplementedError

    # Candidates
    def get_recent_post_ids(self, exclude_author_id: str, exclude_post_ids: Iterable[str] = (),
                            limit: int = 200, since: Optional[datetime] = None) -> List[str]:
        """Newest first"""
        raise NotImplementedError

    def get_heuristic_candidates(self, user_id: str, since: datetime, limit: int) -> List[Dict]:
        """Newest first: id, hashtags, author_skills, like_count, comment_count, created_at"""
        raise NotImplementedError

    # Hydration
    def get_post_authors(self, post_ids: Sequence[str]) -> Dict[str, str]:
        raise NotImplementedError

    def get_posts(self, post_ids: Sequence[str]) -> List[Dict]:
        raise NotImplementedError

    def get_post_ids_by_author(self, author_id: str) -> List[str]:
        raise NotImplementedError


class PostgresStore(FeedStore):
    def __init__(self, dsn: Optional[str] = None, min_connections: int = 1,
                 max_connections: int = DB_POOL_SIZE):
        self.dsn = dsn or DATABASE_URL
        # ThreadedConnectionPool raises when exhausted; callers queue here instead
        self._slots = threading.BoundedSemaphore(max_connections)
        try:
            self._pool = ThreadedConnectionPool(
                min_connections, max_connections, dsn=self.dsn, cursor_factory=RealDictCursor
            )
            logger.info("Connected to PostgreSQL")
        except psycopg2.Error as e:
            logger.error(f"Failed to connect to PostgreSQL: {e}")
            raise StoreError(str(e)) from e

    @contextmanager
    def _cursor(self):
        self._slots.acquire()
        conn = None
        try:
            conn = self._pool.getconn()
            with conn.cursor() as cur:
                yield cur
        except psycopg2.Error as e:
            logger.error(f"Query failed: {e}")
            raise StoreError(str(e)) from e
        finally:
            if conn is not None:
                self._release(conn)
            self._slots.release()

    def _release(self, conn):
        """End the read-only transaction and hand the connection back"""
        try:
            conn.rollback()
        except psycopg2.Error as e:
            logger.warning(f"Rollback failed, discarding connection: {e}")
            self._pool.putconn(conn, close=True)
            return
        self._pool.putconn(conn)

    def _fetchall(self, query: str, params: tuple = ()) -> List[Dict]:
        with self._cursor() as cur:
            cur.execute(query, params)
            return cur.fetchall()

    def _fetchone(self, query: str, params: tuple = ()) -> Optional[Dict]:
        with self._cursor() as cur:
            cur.execute(query, params)
            return cur.fetchone()

    def close(self):
        self._pool.closeall()

    def get_all_post_hashtags(self) -> List[List[str]]:
        rows = self._fetchall('SELECT hashtags FROM "Post" ORDER BY "createdAt" ASC')
        return [row["hashtags"] or [] for row in rows]

    def get_all_user_skills(self) -> List[List[str]]:
        rows = self._fetchall('SELECT skills FROM "User" ORDER BY "createdAt" ASC')
        return [row["skills"] or [] for row in rows]

    def get_liked_post_hashtags(self, user_id: str, limit: int) -> List[List[str]]:
        rows = self._fetchall(
            """
            SELECT p.hashtags
            FROM "Like" l
            JOIN "Post" p ON p.id = l."postId"
            WHERE l."userId" = %s
            ORDER BY l."createdAt" DESC
            LIMIT %s
            """,
            (user_id, limit),
        )
        return [row["hashtags"] or [] for row in rows]

    def get_commented_post_hashtags(self, user_id: str, limit: int) -> List[List[str]]:
        rows = self._fetchall(
            """
            SELECT p.hashtags
            FROM "Comment" c
            JOIN "Post" p ON p.id = c."postId"
            WHERE c."authorId" = %s
            ORDER BY c."createdAt" DESC
            LIMIT %s
            """,
            (user_id, limit),
        )
        return [row["hashtags"] or [] for row in rows]

    def get_user_skills(self, user_id: str) -> Optional[List[str]]:
        row = self._fetchone('SELECT skills FROM "User" WHERE id = %s', (user_id,))
        if row is None:
            return None
        return row["skills"] or []

    def get_user_activity_counts(self, user_id: str) -> Dict[str, int]:
        row = self._fetchone(
            """
            SELECT
                (SELECT COUNT(*) FROM "Like" WHERE "userId" = %s) AS likes,
                (SELECT COUNT(*) FROM "Comment" WHERE "authorId" = %s) AS comments,
                (SELECT COUNT(*) FROM "Post" WHERE "authorId" = %s) AS posts
            """,
            (user_id, user_id, user_id),
        )
        return {k: int(row[k]) for k in ("likes", "comments", "posts")}

    def get_post_feature_row(self, post_id: str) -> Optional[Dict]:
        return self._fetchone(
            """
            SELECT
                p.id,
                p.hashtags,
                p.views AS view_count,
                p."createdAt" AS created_at,
                u.skills AS author_skills,
                (SELECT COUNT(*) FROM "Like" WHERE "postId" = p.id) AS like_count,
                (SELECT COUNT(*) FROM "Comment" WHERE "postId" = p.id) AS comment_count,
                (SELECT COUNT(*) FROM "Follow" WHERE "followingId" = p."authorId") AS author_follower_count
            FROM "Post" p
            JOIN "User" u ON u.id = p."authorId"
            WHERE p.id = %s
            """,
            (post_id,),
        )

    def count_post_likes(self, user_id: str) -> int:
        row = self._fetchone(
            'SELECT COUNT(*) AS n FROM "Like" WHERE "userId" = %s AND "postId" IS NOT NULL',
            (user_id,),
        )
        return int(row["n"])

    def get_liked_post_ids(self, user_id: str, limit: Optional[int] = None) -> List[str]:
        rows = self._fetchall(
            """
            SELECT "postId" AS id
            FROM "Like"
            WHERE "userId" = %s AND "postId" IS NOT NULL
            ORDER BY "createdAt" DESC
            LIMIT %s
            """,
            (user_id, limit),
        )
        return [row["id"] for row in rows]

    def get_users_with_post_likes(self) -> List[str]:
        rows = self._fetchall(
            'SELECT DISTINCT "userId" AS id FROM "Like" WHERE "postId" IS NOT NULL ORDER BY "userId"'
        )
        return [row["id"] for row in rows]

    def get_liked_among(self, user_id: str, post_ids: Sequence[str]) -> Set[str]:
        if not post_ids:
            return set()
        rows = self._fetchall(
            'SELECT "postId" AS id FROM "Like" WHERE "userId" = %s AND "postId" = ANY(%s::text[])',
            (user_id, list(post_ids)),
        )
        return {row["id"] for row in rows}

    def get_recent_post_ids(self, exclude_author_id: str, exclude_post_ids: Iterable[str] = (),
                            limit: int = 200, since: Optional[datetime] = None) -> List[str]:
        rows = self._fetchall(
            """
            SELECT id
            FROM "Post"
            WHERE "authorId" <> %s
                AND NOT (id = ANY(%s::text[]))
                AND (%s::timestamptz IS NULL OR "createdAt" >= %s::timestamptz)
            ORDER BY "createdAt" DESC
            LIMIT %s
            """,
            (exclude_author_id, list(exclude_post_ids), since, since, limit),
        )
        return [row["id"] for row in rows]

    def get_heuristic_candidates(self, user_id: str, since: datetime, limit: int) -> List[Dict]:
        return self._fetchall(
            """
            SELECT
                p.id,
                p.hashtags,
                p."createdAt" AS created_at,
                u.skills AS author_skills,
                (SELECT COUNT(*) FROM "Like" WHERE "postId" = p.id) AS like_count,
                (SELECT COUNT(*) FROM "Comment" WHERE "postId" = p.id) AS comment_count
            FROM "Post" p
            JOIN "User" u ON u.id = p."authorId"
            WHERE p."createdAt" >= %s AND p."authorId" <> %s
            ORDER BY p."createdAt" DESC
            LIMIT %s
            """,
            (since, user_id, limit),
        )

    def get_post_authors(self, post_ids: Sequence[str]) -> Dict[str, str]:
        if not post_ids:
            return {}
        rows = self._fetchall(
            'SELECT id, "authorId" AS author_id FROM "Post" WHERE id = ANY(%s::text[])',
            (list(post_ids),),
        )
        return {row["id"]: row["author_id"] for row in rows}

    def get_posts(self, post_ids: Sequence[str]) -> List[Dict]:
        if not post_ids:
            return []
        rows = self._fetchall(
            """
            SELECT
                p.*,
                u.id AS author_id,
                u.username AS author_username,
                u."displayName" AS author_display_name,
                u.avatar AS author_avatar,
                (SELECT COUNT(*) FROM "Like" WHERE "postId" = p.id) AS like_count,
                (SELECT COUNT(*) FROM "Comment" WHERE "postId" = p.id) AS comment_count
            FROM "Post" p
            JOIN "User" u ON u.id = p."authorId"
            WHERE p.id = ANY(%s::text[])
            """,
            (list(post_ids),),
        )

        posts = []
        for row in rows:
            post = {k: v for k, v in row.items() if not k.startswith("author_") and k not in ("like_count", "comment_count")}
            post["author"] = {
                "id": row["author_id"],
                "username": row["author_username"],
                "displayName": row["author_display_name"],
                "avatar": row["author_avatar"],
            }
            post["_count"] = {"likes": int(row["like_count"]), "comments": int(row["comment_count"])}
            posts.append(post)
        return posts

    def get_post_ids_by_author(self, author_id: str) -> List[str]:
        rows = self._fetchall('SELECT id FROM "Post" WHERE "authorId" = %s', (author_id,))
        return [row["id"] for row in rows]
