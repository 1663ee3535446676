from datetime import datetime, timezone
from typing import Optional, Union

import numpy as np
from dateutil import parser as dateutil_parser

Timestamp = Union[datetime, str, None]


def normalize_term(term: str) -> str:
    """Normalize a hashtag or skill for vocabulary lookup"""
    if not term or not isinstance(term, str):
        return ""
    return term.strip().lower()


def to_utc(ts: Timestamp) -> Optional[datetime]:
    """Coerce a datetime or ISO string into an aware UTC datetime"""
    if ts is None:
        return None
    if isinstance(ts, str):
        # dateutil handles Z, offsets, and fractional seconds
        ts = dateutil_parser.isoparse(ts)
    # Assume UTC if no timezone provided
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def hours_since(ts: Timestamp, now: Optional[datetime] = None) -> float:
    """Age of a timestamp in hours, never negative"""
    created = to_utc(ts)
    if created is None:
        return 0.0
    now = to_utc(now) if now is not None else datetime.now(timezone.utc)
    return max(0.0, (now - created).total_seconds() / 3600.0)


def clamp_ratio(value: float, norm: float) -> float:
    """value / norm clamped to at most 1.0"""
    if norm <= 0:
        return 0.0
    return min(float(value or 0) / norm, 1.0)


def l2_normalize(vec: np.ndarray, eps: float = 1e-12) -> np.ndarray:
    """L2 normalize, returning all-zero vectors unchanged"""
    vec = np.asarray(vec, dtype=np.float32)
    norm = np.linalg.norm(vec)
    if norm < eps:
        return vec
    return vec / norm

