"""
Pydantic schemas for the dispatch backend.
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class RelevancePayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    score: float = Field(default=-1, ge=-1, le=100)


class ArticleIngestPayload(BaseModel):
    """One article as delivered by the automation tool. Unknown keys are kept."""

    model_config = ConfigDict(extra="allow")

    guid: str = Field(..., min_length=1)
    link: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    published_at_ms: int
    category: Optional[str] = None
    author: Optional[str] = None
    content: Optional[str] = None
    content_snippet: Optional[str] = None
    relevance: RelevancePayload = Field(default_factory=RelevancePayload)
    rss_link_id: Optional[str] = None
    tier: Optional[str] = None


class ItemError(BaseModel):
    index: int
    error: str
    rank: Optional[int] = None


class ArticleIngestResponse(BaseModel):
    status: Literal["success"]
    created_count: int
    updated_count: int
    total_count: int
    article_ids: list[str]
    errors: Optional[list[ItemError]] = None


class ArticleListResponse(BaseModel):
    articles: list[dict]
    count: int
    filters: dict
    page: int
    total_count: int
    total_pages: int
    category_distribution: dict[str, int]
    balanced: bool
    request_id: Optional[str] = None


class ArticleResponse(BaseModel):
    article: dict


class RankingArticlePayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    article_id: Optional[str] = None
    article_host: Optional[str] = None
    article_root_domain: Optional[str] = None
    category: Optional[str] = None
    creator: Optional[str] = None
    feed_match: Optional[dict] = None
    feed_match_reason: Optional[str] = None
    feed_match_status: Optional[str] = None
    link: Optional[str] = None
    match_method: Optional[str] = None
    pub_date_ms: Optional[int] = None
    snippet: Optional[str] = None
    source_name: Optional[str] = None
    title: Optional[str] = None


class RankingPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    rank: Optional[int] = None
    article_id: Optional[str] = None
    canonical_id: Optional[str] = None
    article: RankingArticlePayload = Field(default_factory=RankingArticlePayload)


class RankingsWebhookResponse(BaseModel):
    status: Literal["success"]
    message: str
    batch_id: str
    saved_count: int
    total_count: int
    errors: Optional[list[ItemError]] = None
    notification_jobs: list[str]


class RankingListResponse(BaseModel):
    rankings: list[dict]
    count: int
    page: int
    total_count: int
    total_pages: int


class NotificationJobResponse(BaseModel):
    job_id: str
    channel: str
    target: str
    status: str
    attempts: int
    last_error: Optional[str] = None


class HealthResponse(BaseModel):
    status: Literal["ok"]
    database: str
    queue: str
