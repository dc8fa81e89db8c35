"""
Field names, allow-lists and limits for dispatch articles and rankings.
"""

from __future__ import annotations

ARTICLE_SORT_FIELDS = {
    "published_at_ms": "published_at_ms",
    "relevance.score": "relevance_score",
    "title": "title",
}
DEFAULT_ARTICLE_SORT = (("published_at_ms", -1),)

ARTICLE_SEARCH_FIELDS = ("title", "author", "category", "content_snippet")

ARTICLES_DEFAULT_PAGE = 1
ARTICLES_DEFAULT_LIMIT = 25
ARTICLES_MAX_LIMIT = 100

RANKINGS_DEFAULT_LIMIT = 50
RANKINGS_MAX_LIMIT = 200

SCORE_MIN = -1.0
SCORE_MAX = 100.0

MAX_CONTENT_LENGTH = 2000
MAX_SNIPPET_LENGTH = 500

FEED_MATCH_STATUS_VALUES = ("matched", "unmatched", "new_feed")


class ErrorCode:
    INVALID_CATEGORY = "INVALID_CATEGORY"
    INVALID_DATE_RANGE = "INVALID_DATE_RANGE"
    INVALID_FEED_MATCH_STATUS = "INVALID_FEED_MATCH_STATUS"
    INVALID_PAGE = "INVALID_PAGE"
    INVALID_SCORE_RANGE = "INVALID_SCORE_RANGE"
    INVALID_SORT_FIELD = "INVALID_SORT_FIELD"
    FETCH_CANCELLED = "FETCH_CANCELLED"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    VALIDATION_ERROR = "VALIDATION_ERROR"
