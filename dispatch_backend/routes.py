"""
HTTP routes for the dispatch backend API.
"""

from __future__ import annotations

import logging
import math
import re
import time
import uuid
from typing import Optional, Union

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request

from dispatch_backend.balanced_fetch import fetch_balanced_articles
from dispatch_backend.config import Settings, get_settings
from dispatch_backend.constants import (
    ARTICLE_SORT_FIELDS,
    ARTICLES_DEFAULT_LIMIT,
    ARTICLES_MAX_LIMIT,
    DEFAULT_ARTICLE_SORT,
    FEED_MATCH_STATUS_VALUES,
    MAX_CONTENT_LENGTH,
    MAX_SNIPPET_LENGTH,
    RANKINGS_DEFAULT_LIMIT,
    RANKINGS_MAX_LIMIT,
    SCORE_MAX,
    SCORE_MIN,
    ErrorCode,
)
from dispatch_backend.db import (
    ArticleFilter,
    DbClient,
    DispatchArticle,
    Ranking,
    RankingFilter,
    SortSpec,
)
from dispatch_backend.dependencies import get_db_client, get_queue_client
from dispatch_backend.errors import ApiError, StoreUnavailableError
from dispatch_backend.notifications import render_rankings_email
from dispatch_backend.queue import JobQueue
from dispatch_backend.schemas import (
    ArticleIngestPayload,
    ArticleIngestResponse,
    ArticleListResponse,
    ArticleResponse,
    HealthResponse,
    ItemError,
    NotificationJobResponse,
    RankingListResponse,
    RankingPayload,
    RankingsWebhookResponse,
)
from dispatch_backend.worker import CHANNEL_EMAIL, CHANNEL_WEBHOOK

logger = logging.getLogger(__name__)

router = APIRouter()

ARTICLE_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")


def _request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


def _parse_int(value: Optional[str], code: str, message: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        raise ApiError(code, message) from None


def _parse_page(value: Optional[str]) -> int:
    message = "Page number must be a positive integer"
    page = _parse_int(value, ErrorCode.INVALID_PAGE, message)
    if page is None:
        return 1
    if page < 1:
        raise ApiError(ErrorCode.INVALID_PAGE, message)
    return page


def _parse_score(value: Optional[str], name: str) -> Optional[float]:
    if value is None or value == "":
        return None
    message = f"{name} must be a number between {SCORE_MIN:g} and {SCORE_MAX:g}"
    try:
        score = float(value)
    except ValueError:
        raise ApiError(ErrorCode.INVALID_SCORE_RANGE, message) from None
    if math.isnan(score) or score < SCORE_MIN or score > SCORE_MAX:
        raise ApiError(ErrorCode.INVALID_SCORE_RANGE, message)
    return score


def _parse_sort(sort: Optional[str]) -> SortSpec:
    if not sort:
        return DEFAULT_ARTICLE_SORT
    field_name = sort[1:] if sort.startswith("-") else sort
    if field_name not in ARTICLE_SORT_FIELDS:
        allowed = ", ".join(
            value for name in ARTICLE_SORT_FIELDS for value in (name, f"-{name}")
        )
        raise ApiError(ErrorCode.INVALID_SORT_FIELD, f"Sort must be one of: {allowed}")
    return ((field_name, -1 if sort.startswith("-") else 1),)


def _truncate(value: Optional[str], max_length: int, marker: str) -> Optional[str]:
    if value and len(value) > max_length:
        return value[:max_length] + marker
    return value


def _article_payload(article: DispatchArticle) -> dict:
    payload = article.as_dict()
    payload["content"] = _truncate(
        payload.get("content"), MAX_CONTENT_LENGTH, "... [content truncated]"
    )
    payload["content_snippet"] = _truncate(
        payload.get("content_snippet"), MAX_SNIPPET_LENGTH, "... [truncated]"
    )
    return payload


@router.get("/health", response_model=HealthResponse)
def health(
    db: DbClient = Depends(get_db_client),
    queue: JobQueue = Depends(get_queue_client),
):
    return HealthResponse(
        status="ok", database=type(db).__name__, queue=type(queue).__name__
    )


@router.get("/tonka-dispatch/articles", response_model=ArticleListResponse)
def list_articles(
    request: Request,
    category: Optional[str] = Query(None),
    exclude_used: bool = Query(False),
    publish_start: Optional[str] = Query(None),
    publish_end: Optional[str] = Query(None),
    score_min: Optional[str] = Query(None),
    score_max: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    sort: Optional[str] = Query(None),
    page: Optional[str] = Query(None),
    limit: Optional[str] = Query(None),
    balanced: bool = Query(False),
    global_sort: Optional[bool] = Query(None),
    db: DbClient = Depends(get_db_client),
    settings: Settings = Depends(get_settings),
):
    """
    List dispatch articles with filtering, searching, sorting and pagination.

    With ``balanced=true`` the ``limit`` becomes a target total spread across
    the configured categories; ``page`` is ignored in that mode.
    """
    request_id = _request_id(request)
    date_message = "{} must be a valid timestamp in milliseconds"
    publish_start_ms = _parse_int(
        publish_start, ErrorCode.INVALID_DATE_RANGE, date_message.format("publish_start")
    )
    publish_end_ms = _parse_int(
        publish_end, ErrorCode.INVALID_DATE_RANGE, date_message.format("publish_end")
    )
    min_score = _parse_score(score_min, "score_min")
    max_score = _parse_score(score_max, "score_max")
    requested_page = _parse_page(page)
    limit_value = _parse_int(limit, ErrorCode.VALIDATION_ERROR, "limit must be an integer")
    if limit_value is not None and limit_value < 0:
        raise ApiError(ErrorCode.VALIDATION_ERROR, "limit must be zero or positive")
    limit_num = (
        ARTICLES_DEFAULT_LIMIT if limit_value is None else min(limit_value, ARTICLES_MAX_LIMIT)
    )
    sort_spec = _parse_sort(sort)

    exclude_ids: frozenset = frozenset()
    if exclude_used:
        exclude_ids = frozenset(db.distinct_ranked_article_ids())
        logger.info("[%s] Excluding %d ranked article ids", request_id, len(exclude_ids))

    search_term = search.strip() if search and search.strip() else None
    article_filter = ArticleFilter(
        category=category or None,
        exclude_ids=exclude_ids,
        publish_start_ms=publish_start_ms,
        publish_end_ms=publish_end_ms,
        score_min=min_score,
        score_max=max_score,
        search=search_term,
    )

    filters = {
        "category": category or None,
        "exclude_used": exclude_used if exclude_used else None,
        "publish_start": publish_start_ms,
        "publish_end": publish_end_ms,
        "score_min": min_score,
        "score_max": max_score,
        "search": search_term,
    }
    filters = {key: value for key, value in filters.items() if value is not None}

    total_count = db.count_articles(article_filter)

    if balanced:
        if category:
            raise ApiError(
                ErrorCode.INVALID_CATEGORY,
                "Balanced listing spans all categories; drop the category filter",
            )
        if limit_num == 0:
            raise ApiError(
                ErrorCode.VALIDATION_ERROR, "Balanced listing requires a positive limit"
            )
        deadline = None
        if settings.balanced_fetch_timeout_seconds:
            deadline = time.monotonic() + settings.balanced_fetch_timeout_seconds
        result = fetch_balanced_articles(
            db,
            article_filter,
            sort_spec,
            limit_num,
            categories=settings.article_categories,
            max_backfill_iterations=settings.balanced_max_backfill_iterations,
            request_id=request_id,
            deadline=deadline,
            global_sort=(
                settings.balanced_global_sort if global_sort is None else global_sort
            ),
        )
        articles = result.articles
        page_num, total_pages = 1, 1
    else:
        skip = 0 if limit_num == 0 else (requested_page - 1) * limit_num
        articles = db.query_articles(article_filter, sort_spec, limit_num, skip)
        page_num = requested_page
        total_pages = 1 if limit_num == 0 else math.ceil(total_count / limit_num)

    payloads = [_article_payload(article) for article in articles]
    distribution: dict[str, int] = {}
    for article in articles:
        key = article.category or "uncategorized"
        distribution[key] = distribution.get(key, 0) + 1

    logger.info(
        "[%s] Returning %d of %d articles (balanced=%s): %s",
        request_id,
        len(payloads),
        total_count,
        balanced,
        distribution,
    )
    return ArticleListResponse(
        articles=payloads,
        count=len(payloads),
        filters=filters,
        page=page_num,
        total_count=total_count,
        total_pages=total_pages,
        category_distribution=distribution,
        balanced=balanced,
        request_id=request_id,
    )


@router.get("/tonka-dispatch/articles/{article_id}", response_model=ArticleResponse)
def get_article(article_id: str, db: DbClient = Depends(get_db_client)):
    article = db.get_article(article_id)
    if not article:
        raise HTTPException(status_code=404, detail="Article not found")
    return ArticleResponse(article=article.as_dict())


@router.post("/webhooks/tonka-dispatch/articles", response_model=ArticleIngestResponse)
def ingest_articles(
    request: Request,
    payload: Union[list[ArticleIngestPayload], ArticleIngestPayload] = Body(...),
    db: DbClient = Depends(get_db_client),
):
    """
    Upsert articles delivered by the automation tool, keyed by guid.
    """
    request_id = _request_id(request)
    items = payload if isinstance(payload, list) else [payload]
    if not items:
        raise ApiError(
            ErrorCode.VALIDATION_ERROR, "Invalid payload format - expected articles"
        )

    created_count = updated_count = 0
    article_ids: list[str] = []
    errors: list[ItemError] = []
    for index, item in enumerate(items):
        article = DispatchArticle(
            guid=item.guid,
            link=item.link,
            title=item.title,
            published_at_ms=item.published_at_ms,
            category=item.category,
            author=item.author,
            content=item.content,
            content_snippet=item.content_snippet,
            relevance_score=item.relevance.score,
            rss_link_id=item.rss_link_id,
            tier=item.tier,
            extra=dict(item.model_extra or {}),
        )
        try:
            saved, created = db.upsert_article(article)
        except StoreUnavailableError:
            raise
        except Exception as exc:
            logger.exception("[%s] Failed to upsert article %s", request_id, item.guid)
            errors.append(ItemError(index=index, error=str(exc)))
            continue
        article_ids.append(saved.id)
        if created:
            created_count += 1
        else:
            updated_count += 1

    logger.info(
        "[%s] Articles webhook: %d created, %d updated, %d errors",
        request_id,
        created_count,
        updated_count,
        len(errors),
    )
    return ArticleIngestResponse(
        status="success",
        created_count=created_count,
        updated_count=updated_count,
        total_count=len(items),
        article_ids=article_ids,
        errors=errors or None,
    )


def _ranking_from_payload(batch_id: str, item: RankingPayload) -> Ranking:
    article = item.article
    article_id = item.article_id or article.article_id
    if article_id and not ARTICLE_ID_PATTERN.match(article_id):
        article_id = None
    feed_match = article.feed_match or {}
    return Ranking(
        batch_id=batch_id,
        rank=item.rank,
        dispatch_article_id=article_id,
        canonical_id=item.canonical_id,
        category=article.category,
        title=article.title,
        link=article.link,
        snippet=article.snippet,
        source_name=article.source_name,
        creator=article.creator,
        article_host=article.article_host,
        article_root_domain=article.article_root_domain,
        feed_match_status=article.feed_match_status,
        feed_match_reason=article.feed_match_reason,
        match_method=article.match_method,
        pub_date_ms=article.pub_date_ms,
        tonka_dispatch_rss_links_id=feed_match.get("_id") or feed_match.get("id"),
    )


def _queue_rankings_notifications(
    db: DbClient,
    queue: JobQueue,
    settings: Settings,
    batch_id: str,
    rankings: list[Ranking],
    notify_email: Optional[str],
) -> list[str]:
    ranking_dicts = [ranking.as_dict() for ranking in rankings]
    subject, html_body = render_rankings_email(batch_id, ranking_dicts)
    recipients = list(settings.rankings_notify_emails)
    if notify_email and notify_email not in recipients:
        recipients.append(notify_email)

    job_ids: list[str] = []
    for recipient in recipients:
        job = db.create_notification_job(
            CHANNEL_EMAIL, recipient, {"subject": subject, "html_body": html_body}
        )
        job_ids.append(job.job_id)
    for url in settings.rankings_forward_urls:
        job = db.create_notification_job(
            CHANNEL_WEBHOOK,
            url,
            {
                "event": "tonka_dispatch.rankings",
                "batch_id": batch_id,
                "rankings": ranking_dicts,
            },
        )
        job_ids.append(job.job_id)
    for job_id in job_ids:
        queue.enqueue(job_id)
    return job_ids


@router.post(
    "/webhooks/tonka-dispatch/rankings", response_model=RankingsWebhookResponse
)
def receive_rankings(
    request: Request,
    payload: Union[list[RankingPayload], RankingPayload] = Body(...),
    notify_email: Optional[str] = Query(None),
    db: DbClient = Depends(get_db_client),
    queue: JobQueue = Depends(get_queue_client),
    settings: Settings = Depends(get_settings),
):
    """
    Persist a batch of ranked content and relay it to the configured targets.

    The automation tool may send a single object or an array; both are
    accepted. Per-item failures are reported without failing the batch.
    """
    request_id = _request_id(request)
    items = payload if isinstance(payload, list) else [payload]
    if not items:
        raise ApiError(
            ErrorCode.VALIDATION_ERROR,
            "Invalid payload format - expected array of rankings",
        )

    batch_id = str(uuid.uuid4())
    logger.info("[%s] Saving %d rankings as batch %s", request_id, len(items), batch_id)

    saved: list[Ranking] = []
    errors: list[ItemError] = []
    for index, item in enumerate(items):
        try:
            saved.append(db.save_ranking(_ranking_from_payload(batch_id, item)))
        except StoreUnavailableError:
            raise
        except Exception as exc:
            logger.exception("[%s] Failed to save ranking %d", request_id, index)
            errors.append(ItemError(index=index, error=str(exc), rank=item.rank))

    job_ids: list[str] = []
    if saved:
        job_ids = _queue_rankings_notifications(
            db, queue, settings, batch_id, saved, notify_email
        )

    logger.info(
        "[%s] Rankings batch %s: %d saved, %d errors, %d notifications queued",
        request_id,
        batch_id,
        len(saved),
        len(errors),
        len(job_ids),
    )
    return RankingsWebhookResponse(
        status="success",
        message="Rankings received and processed successfully",
        batch_id=batch_id,
        saved_count=len(saved),
        total_count=len(items),
        errors=errors or None,
        notification_jobs=job_ids,
    )


@router.get("/tonka-dispatch/rankings", response_model=RankingListResponse)
def list_rankings(
    batch_id: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    feed_match_status: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    page: Optional[str] = Query(None),
    limit: Optional[str] = Query(None),
    db: DbClient = Depends(get_db_client),
):
    if feed_match_status and feed_match_status not in FEED_MATCH_STATUS_VALUES:
        raise ApiError(
            ErrorCode.INVALID_FEED_MATCH_STATUS,
            f"feed_match_status must be one of: {', '.join(FEED_MATCH_STATUS_VALUES)}",
        )
    page_num = _parse_page(page)
    limit_value = _parse_int(limit, ErrorCode.VALIDATION_ERROR, "limit must be an integer")
    if limit_value is not None and limit_value < 1:
        raise ApiError(ErrorCode.VALIDATION_ERROR, "limit must be at least 1")
    limit_num = min(limit_value or RANKINGS_DEFAULT_LIMIT, RANKINGS_MAX_LIMIT)
    ranking_filter = RankingFilter(
        batch_id=batch_id,
        category=category,
        feed_match_status=feed_match_status,
        search=search.strip() if search and search.strip() else None,
    )
    total_count = db.count_rankings(ranking_filter)
    rankings = db.list_rankings(ranking_filter, limit_num, (page_num - 1) * limit_num)
    return RankingListResponse(
        rankings=[ranking.as_dict() for ranking in rankings],
        count=len(rankings),
        page=page_num,
        total_count=total_count,
        total_pages=math.ceil(total_count / limit_num),
    )


@router.get("/notification-jobs/{job_id}", response_model=NotificationJobResponse)
def notification_job_status(job_id: str, db: DbClient = Depends(get_db_client)):
    job = db.get_notification_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Notification job not found")
    return NotificationJobResponse(
        job_id=job.job_id,
        channel=job.channel,
        target=job.target,
        status=job.status.name,
        attempts=job.attempts,
        last_error=job.last_error,
    )
