"""
Balanced category fetch for dispatch article listings.

Returns up to ``target_limit`` articles spread evenly across a fixed set of
categories. A first pass takes ``ceil(target_limit / len(categories))`` from
each category; if that comes up short, bounded backfill iterations take one
more article per category per iteration (round-robin) until the target is
met, the iteration cap is reached, or an iteration adds nothing.

The result is category-major: each category's run is sorted by the sort
spec, but the concatenation is not globally sorted unless ``global_sort`` is
requested.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from dispatch_backend.db import (
    ArticleFilter,
    DbClient,
    DispatchArticle,
    SortSpec,
    sort_articles,
)
from dispatch_backend.errors import FetchCancelledError

logger = logging.getLogger(__name__)

MAX_BACKFILL_ITERATIONS = 5


@dataclass
class CategoryTally:
    target: int
    fetched: int = 0
    articles: List[DispatchArticle] = field(default_factory=list)


@dataclass
class BalancedFetchResult:
    articles: List[DispatchArticle] = field(default_factory=list)
    tally: Dict[str, CategoryTally] = field(default_factory=dict)
    first_pass_count: int = 0
    backfill_iterations: int = 0
    queries_issued: int = 0

    def distribution(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for article in self.articles:
            key = article.category or "uncategorized"
            counts[key] = counts.get(key, 0) + 1
        return counts


class _FetchGuard:
    """Checks cancellation before each store query and counts queries."""

    def __init__(
        self,
        deadline: Optional[float],
        cancel_event: Optional[threading.Event],
        request_id: Optional[str],
    ):
        self.deadline = deadline
        self.cancel_event = cancel_event
        self.request_id = request_id
        self.queries = 0

    def before_query(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise FetchCancelledError("balanced fetch cancelled by caller")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise FetchCancelledError("balanced fetch deadline exceeded")
        self.queries += 1


def fetch_balanced_articles(
    store: DbClient,
    base_filter: ArticleFilter,
    sort: SortSpec,
    target_limit: int,
    *,
    categories: Sequence[str],
    max_backfill_iterations: int = MAX_BACKFILL_ITERATIONS,
    request_id: Optional[str] = None,
    deadline: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
    global_sort: bool = False,
) -> BalancedFetchResult:
    """
    Fetch up to ``target_limit`` articles balanced across ``categories``.

    Args:
        store: Any client exposing ``query_articles(filter, sort, limit)``.
        base_filter: Filter applied to every category query. Must not set a
            category.
        sort: Ordering used for every query in this fetch.
        target_limit: Desired total. Non-positive values return an empty
            result without querying.
        categories: The fixed category enumeration, in round-robin order.
        max_backfill_iterations: Upper bound on backfill iterations.
        request_id: Correlation id for log lines only.
        deadline: ``time.monotonic()`` value after which no further query is
            issued.
        cancel_event: When set, no further query is issued.
        global_sort: Re-sort the final sequence by ``sort``.

    Raises:
        ValueError: If ``base_filter`` constrains category.
        FetchCancelledError: If the deadline passes or the event is set.
        Any error raised by ``store`` propagates unchanged.
    """
    if base_filter.category is not None:
        raise ValueError("base_filter must not constrain category")

    result = BalancedFetchResult()
    if target_limit <= 0 or not categories:
        return result

    guard = _FetchGuard(deadline, cancel_event, request_id)
    target_per_category = math.ceil(target_limit / len(categories))
    used_ids: set[str] = set()

    def accept(category: str, article: DispatchArticle) -> bool:
        if article.id in used_ids:
            logger.debug(
                "[%s] Skipping duplicate article %s from category %s",
                request_id,
                article.id,
                category,
            )
            return False
        used_ids.add(article.id)
        result.articles.append(article)
        tally = result.tally[category]
        tally.fetched += 1
        tally.articles.append(article)
        return True

    # First pass: capped per category.
    for category in categories:
        result.tally[category] = CategoryTally(target=target_per_category)
        guard.before_query()
        fetched = store.query_articles(
            base_filter.with_category(category), sort, target_per_category
        )
        for article in fetched:
            accept(category, article)

    result.first_pass_count = len(result.articles)
    logger.info(
        "[%s] Balanced fetch first pass: %d/%d articles %s",
        request_id,
        result.first_pass_count,
        target_limit,
        {c: f"{t.fetched}/{t.target}" for c, t in result.tally.items()},
    )

    if result.first_pass_count >= target_limit:
        del result.articles[target_limit:]
        kept = {article.id for article in result.articles}
        for tally in result.tally.values():
            tally.articles = [a for a in tally.articles if a.id in kept]
            tally.fetched = len(tally.articles)
        return _finish(result, sort, global_sort, guard)

    # Backfill: one more per category per iteration, excluding everything taken.
    while (
        len(result.articles) < target_limit
        and result.backfill_iterations < max_backfill_iterations
    ):
        result.backfill_iterations += 1
        added_this_iteration = 0
        for category in categories:
            if len(result.articles) >= target_limit:
                break
            guard.before_query()
            extra = store.query_articles(
                base_filter.with_category(category).excluding(used_ids), sort, 1
            )
            if extra and accept(category, extra[0]):
                added_this_iteration += 1

        logger.debug(
            "[%s] Backfill iteration %d added %d (total %d/%d)",
            request_id,
            result.backfill_iterations,
            added_this_iteration,
            len(result.articles),
            target_limit,
        )
        if added_this_iteration == 0:
            logger.info(
                "[%s] Store exhausted after %d backfill iterations",
                request_id,
                result.backfill_iterations,
            )
            break

    return _finish(result, sort, global_sort, guard)


def _finish(
    result: BalancedFetchResult,
    sort: SortSpec,
    global_sort: bool,
    guard: _FetchGuard,
) -> BalancedFetchResult:
    result.queries_issued = guard.queries
    if global_sort:
        result.articles = sort_articles(result.articles, sort)
    logger.info(
        "[%s] Balanced fetch returned %d articles in %d queries: %s",
        guard.request_id,
        len(result.articles),
        result.queries_issued,
        result.distribution(),
    )
    return result
