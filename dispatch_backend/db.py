"""
Document store abstraction for Postgres and an in-memory test implementation.

Articles, rankings and notification jobs are stored as flat records. The
query surface is deliberately small: filter + sort + limit (+ skip), which is
all the balanced category fetcher and the list endpoints need.
"""

from __future__ import annotations

import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional, Protocol, Sequence, Tuple

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    Float,
    Integer,
    String,
    Text,
    create_engine,
    func,
    or_,
    select,
)
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from dispatch_backend.constants import ARTICLE_SEARCH_FIELDS, ARTICLE_SORT_FIELDS
from dispatch_backend.errors import StoreUnavailableError

# Ordered (field, direction) pairs; direction is 1 (ascending) or -1.
SortSpec = Tuple[Tuple[str, int], ...]


class NotificationStatus(Enum):
    WAITING = "WAITING"
    SENDING = "SENDING"
    SENT = "SENT"
    FAILED = "FAILED"


@dataclass
class DispatchArticle:
    guid: str
    link: str
    title: str
    published_at_ms: int
    category: Optional[str] = None
    author: Optional[str] = None
    content: Optional[str] = None
    content_snippet: Optional[str] = None
    relevance_score: float = -1.0
    rss_link_id: Optional[str] = None
    tier: Optional[str] = None
    extra: dict = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def as_dict(self) -> dict:
        payload = dict(self.extra)
        payload.update(
            {
                "id": self.id,
                "guid": self.guid,
                "link": self.link,
                "title": self.title,
                "author": self.author,
                "category": self.category,
                "content": self.content,
                "content_snippet": self.content_snippet,
                "published_at_ms": self.published_at_ms,
                "relevance": {"score": self.relevance_score},
                "rss_link_id": self.rss_link_id,
                "tier": self.tier,
            }
        )
        return payload


@dataclass
class Ranking:
    batch_id: str
    rank: Optional[int] = None
    dispatch_article_id: Optional[str] = None
    canonical_id: Optional[str] = None
    category: Optional[str] = None
    title: Optional[str] = None
    link: Optional[str] = None
    snippet: Optional[str] = None
    source_name: Optional[str] = None
    creator: Optional[str] = None
    article_host: Optional[str] = None
    article_root_domain: Optional[str] = None
    feed_match_status: Optional[str] = None
    feed_match_reason: Optional[str] = None
    match_method: Optional[str] = None
    pub_date_ms: Optional[int] = None
    tonka_dispatch_rss_links_id: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "rank": self.rank,
            "dispatch_article_id": self.dispatch_article_id,
            "canonical_id": self.canonical_id,
            "category": self.category,
            "title": self.title,
            "link": self.link,
            "snippet": self.snippet,
            "source_name": self.source_name,
            "creator": self.creator,
            "article_host": self.article_host,
            "article_root_domain": self.article_root_domain,
            "feed_match_status": self.feed_match_status,
            "feed_match_reason": self.feed_match_reason,
            "match_method": self.match_method,
            "pub_date_ms": self.pub_date_ms,
            "tonka_dispatch_rss_links_id": self.tonka_dispatch_rss_links_id,
            "created_at": self.created_at,
        }


@dataclass
class NotificationJob:
    job_id: str
    channel: str
    target: str
    payload: dict
    status: NotificationStatus = NotificationStatus.WAITING
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "channel": self.channel,
            "target": self.target,
            "status": self.status.name,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class ArticleFilter:
    """Conjunctive article filter. Every set field must match."""

    category: Optional[str] = None
    exclude_ids: frozenset = frozenset()
    publish_start_ms: Optional[int] = None
    publish_end_ms: Optional[int] = None
    score_min: Optional[float] = None
    score_max: Optional[float] = None
    search: Optional[str] = None

    def with_category(self, category: str) -> "ArticleFilter":
        return replace(self, category=category)

    def excluding(self, ids: Iterable[str]) -> "ArticleFilter":
        return replace(self, exclude_ids=self.exclude_ids | frozenset(ids))

    def matches(self, article: DispatchArticle) -> bool:
        if self.category is not None and article.category != self.category:
            return False
        if article.id in self.exclude_ids:
            return False
        if self.publish_start_ms is not None and article.published_at_ms < self.publish_start_ms:
            return False
        if self.publish_end_ms is not None and article.published_at_ms > self.publish_end_ms:
            return False
        if self.score_min is not None and article.relevance_score < self.score_min:
            return False
        if self.score_max is not None and article.relevance_score > self.score_max:
            return False
        if self.search:
            needle = self.search.lower()
            haystacks = [getattr(article, name) or "" for name in ARTICLE_SEARCH_FIELDS]
            if not any(needle in value.lower() for value in haystacks):
                return False
        return True


@dataclass(frozen=True)
class RankingFilter:
    batch_id: Optional[str] = None
    category: Optional[str] = None
    feed_match_status: Optional[str] = None
    search: Optional[str] = None

    def matches(self, ranking: Ranking) -> bool:
        if self.batch_id is not None and ranking.batch_id != self.batch_id:
            return False
        if self.category is not None and ranking.category != self.category:
            return False
        if (
            self.feed_match_status is not None
            and ranking.feed_match_status != self.feed_match_status
        ):
            return False
        if self.search:
            needle = self.search.lower()
            fields = (
                ranking.title,
                ranking.canonical_id,
                ranking.source_name,
                ranking.category,
                ranking.snippet,
            )
            if not any(needle in (value or "").lower() for value in fields):
                return False
        return True


def sort_articles(articles: Iterable[DispatchArticle], sort: SortSpec) -> List[DispatchArticle]:
    """Sort articles by a sort spec, breaking ties by id ascending."""
    ordered = sorted(articles, key=lambda a: a.id)
    for field_name, direction in reversed(tuple(sort)):
        attr = ARTICLE_SORT_FIELDS.get(field_name, field_name)
        ordered.sort(key=lambda a: getattr(a, attr), reverse=direction < 0)
    return ordered


class DbClient(Protocol):
    """Interface for database access."""

    def query_articles(
        self,
        article_filter: ArticleFilter,
        sort: SortSpec,
        limit: int,
        skip: int = 0,
    ) -> List[DispatchArticle]:
        ...

    def count_articles(self, article_filter: ArticleFilter) -> int:
        ...

    def get_article(self, article_id: str) -> Optional[DispatchArticle]:
        ...

    def upsert_article(self, article: DispatchArticle) -> Tuple[DispatchArticle, bool]:
        ...

    def save_ranking(self, ranking: Ranking) -> Ranking:
        ...

    def list_rankings(
        self, ranking_filter: RankingFilter, limit: int, skip: int = 0
    ) -> List[Ranking]:
        ...

    def count_rankings(self, ranking_filter: RankingFilter) -> int:
        ...

    def distinct_ranked_article_ids(self) -> set[str]:
        ...

    def create_notification_job(
        self, channel: str, target: str, payload: dict
    ) -> NotificationJob:
        ...

    def get_notification_job(self, job_id: str) -> Optional[NotificationJob]:
        ...

    def update_notification_job(
        self,
        job_id: str,
        *,
        status: Optional[NotificationStatus] = None,
        attempts: Optional[int] = None,
        last_error: Optional[str] = None,
    ) -> None:
        ...


class InMemoryDbClient:
    """Simple in-memory database for development and tests."""

    def __init__(self):
        self.articles: Dict[str, DispatchArticle] = {}
        self.rankings: Dict[str, Ranking] = {}
        self.jobs: Dict[str, NotificationJob] = {}

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        self.articles.clear()
        self.rankings.clear()
        self.jobs.clear()

    def query_articles(
        self,
        article_filter: ArticleFilter,
        sort: SortSpec,
        limit: int,
        skip: int = 0,
    ) -> List[DispatchArticle]:
        matched = [a for a in self.articles.values() if article_filter.matches(a)]
        ordered = sort_articles(matched, sort)[skip:]
        return ordered[:limit] if limit else ordered

    def count_articles(self, article_filter: ArticleFilter) -> int:
        return sum(1 for a in self.articles.values() if article_filter.matches(a))

    def get_article(self, article_id: str) -> Optional[DispatchArticle]:
        return self.articles.get(article_id)

    def upsert_article(self, article: DispatchArticle) -> Tuple[DispatchArticle, bool]:
        for existing in self.articles.values():
            if existing.guid == article.guid:
                updated = replace(article, id=existing.id)
                self.articles[existing.id] = updated
                return updated, False
        self.articles[article.id] = article
        return article, True

    def save_ranking(self, ranking: Ranking) -> Ranking:
        self.rankings[ranking.id] = ranking
        return ranking

    def list_rankings(
        self, ranking_filter: RankingFilter, limit: int, skip: int = 0
    ) -> List[Ranking]:
        matched = [r for r in self.rankings.values() if ranking_filter.matches(r)]
        matched.sort(key=lambda r: (-r.created_at, r.rank if r.rank is not None else 0))
        matched = matched[skip:]
        return matched[:limit] if limit else matched

    def count_rankings(self, ranking_filter: RankingFilter) -> int:
        return sum(1 for r in self.rankings.values() if ranking_filter.matches(r))

    def distinct_ranked_article_ids(self) -> set[str]:
        return {
            r.dispatch_article_id
            for r in self.rankings.values()
            if r.dispatch_article_id is not None
        }

    def create_notification_job(
        self, channel: str, target: str, payload: dict
    ) -> NotificationJob:
        job = NotificationJob(
            job_id=uuid.uuid4().hex, channel=channel, target=target, payload=payload
        )
        self.jobs[job.job_id] = job
        return job

    def get_notification_job(self, job_id: str) -> Optional[NotificationJob]:
        return self.jobs.get(job_id)

    def update_notification_job(
        self,
        job_id: str,
        *,
        status: Optional[NotificationStatus] = None,
        attempts: Optional[int] = None,
        last_error: Optional[str] = None,
    ) -> None:
        job = self.jobs.get(job_id)
        if not job:
            return
        if status:
            job.status = status
        if attempts is not None:
            job.attempts = attempts
        if last_error is not None:
            job.last_error = last_error
        job.updated_at = time.time()


class SqlDbClient:
    """
    SQLAlchemy-backed client. Postgres in production; any SQLAlchemy URL works,
    which lets the tests run it against in-memory SQLite.
    """

    def __init__(self, database_url: str):
        self.engine = create_engine(database_url, future=True)
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with self.Session() as session:
                yield session
        except (OperationalError, InterfaceError, PoolTimeoutError) as exc:
            raise StoreUnavailableError(str(getattr(exc, "orig", None) or exc)) from exc

    def _article_conditions(self, article_filter: ArticleFilter) -> list:
        conditions = []
        if article_filter.category is not None:
            conditions.append(ArticleRow.category == article_filter.category)
        if article_filter.exclude_ids:
            conditions.append(ArticleRow.id.notin_(sorted(article_filter.exclude_ids)))
        if article_filter.publish_start_ms is not None:
            conditions.append(ArticleRow.published_at_ms >= article_filter.publish_start_ms)
        if article_filter.publish_end_ms is not None:
            conditions.append(ArticleRow.published_at_ms <= article_filter.publish_end_ms)
        if article_filter.score_min is not None:
            conditions.append(ArticleRow.relevance_score >= article_filter.score_min)
        if article_filter.score_max is not None:
            conditions.append(ArticleRow.relevance_score <= article_filter.score_max)
        if article_filter.search:
            needle = article_filter.search.lower()
            conditions.append(
                or_(
                    *[
                        func.lower(getattr(ArticleRow, name)).contains(
                            needle, autoescape=True
                        )
                        for name in ARTICLE_SEARCH_FIELDS
                    ]
                )
            )
        return conditions

    def _order_by(self, sort: SortSpec) -> list:
        clauses = []
        for field_name, direction in sort:
            column = getattr(ArticleRow, ARTICLE_SORT_FIELDS.get(field_name, field_name))
            clauses.append(column.desc() if direction < 0 else column.asc())
        clauses.append(ArticleRow.id.asc())
        return clauses

    def _to_article(self, row: "ArticleRow") -> DispatchArticle:
        return DispatchArticle(
            id=row.id,
            guid=row.guid,
            link=row.link,
            title=row.title,
            published_at_ms=row.published_at_ms,
            category=row.category,
            author=row.author,
            content=row.content,
            content_snippet=row.content_snippet,
            relevance_score=row.relevance_score,
            rss_link_id=row.rss_link_id,
            tier=row.tier,
            extra=dict(row.extra or {}),
        )

    def _to_ranking(self, row: "RankingRow") -> Ranking:
        return Ranking(**{name: getattr(row, name) for name in _RANKING_COLUMNS})

    def _to_job(self, row: "NotificationJobRow") -> NotificationJob:
        return NotificationJob(
            job_id=row.job_id,
            channel=row.channel,
            target=row.target,
            payload=dict(row.payload or {}),
            status=NotificationStatus(row.status),
            attempts=row.attempts,
            last_error=row.last_error,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def query_articles(
        self,
        article_filter: ArticleFilter,
        sort: SortSpec,
        limit: int,
        skip: int = 0,
    ) -> List[DispatchArticle]:
        stmt = (
            select(ArticleRow)
            .where(*self._article_conditions(article_filter))
            .order_by(*self._order_by(sort))
        )
        if skip:
            stmt = stmt.offset(skip)
        if limit:
            stmt = stmt.limit(limit)
        with self._session() as session:
            rows = session.execute(stmt).scalars().all()
            return [self._to_article(row) for row in rows]

    def count_articles(self, article_filter: ArticleFilter) -> int:
        stmt = (
            select(func.count())
            .select_from(ArticleRow)
            .where(*self._article_conditions(article_filter))
        )
        with self._session() as session:
            return session.execute(stmt).scalar_one()

    def get_article(self, article_id: str) -> Optional[DispatchArticle]:
        with self._session() as session:
            row = session.get(ArticleRow, article_id)
            return self._to_article(row) if row else None

    def upsert_article(self, article: DispatchArticle) -> Tuple[DispatchArticle, bool]:
        values = {
            "link": article.link,
            "title": article.title,
            "published_at_ms": article.published_at_ms,
            "category": article.category,
            "author": article.author,
            "content": article.content,
            "content_snippet": article.content_snippet,
            "relevance_score": article.relevance_score,
            "rss_link_id": article.rss_link_id,
            "tier": article.tier,
            "extra": article.extra,
        }
        with self._session() as session:
            stmt = select(ArticleRow).where(ArticleRow.guid == article.guid)
            row = session.execute(stmt).scalar_one_or_none()
            created = row is None
            if created:
                row = ArticleRow(id=article.id, guid=article.guid, **values)
                session.add(row)
            else:
                for name, value in values.items():
                    setattr(row, name, value)
            session.commit()
            session.refresh(row)
            return self._to_article(row), created

    def save_ranking(self, ranking: Ranking) -> Ranking:
        with self._session() as session:
            session.add(
                RankingRow(**{name: getattr(ranking, name) for name in _RANKING_COLUMNS})
            )
            session.commit()
        return ranking

    def _ranking_conditions(self, ranking_filter: RankingFilter) -> list:
        conditions = []
        if ranking_filter.batch_id is not None:
            conditions.append(RankingRow.batch_id == ranking_filter.batch_id)
        if ranking_filter.category is not None:
            conditions.append(RankingRow.category == ranking_filter.category)
        if ranking_filter.feed_match_status is not None:
            conditions.append(
                RankingRow.feed_match_status == ranking_filter.feed_match_status
            )
        if ranking_filter.search:
            needle = ranking_filter.search.lower()
            columns = (
                RankingRow.title,
                RankingRow.canonical_id,
                RankingRow.source_name,
                RankingRow.category,
                RankingRow.snippet,
            )
            conditions.append(
                or_(*[func.lower(c).contains(needle, autoescape=True) for c in columns])
            )
        return conditions

    def list_rankings(
        self, ranking_filter: RankingFilter, limit: int, skip: int = 0
    ) -> List[Ranking]:
        stmt = (
            select(RankingRow)
            .where(*self._ranking_conditions(ranking_filter))
            .order_by(RankingRow.created_at.desc(), RankingRow.rank.asc())
        )
        if skip:
            stmt = stmt.offset(skip)
        if limit:
            stmt = stmt.limit(limit)
        with self._session() as session:
            return [self._to_ranking(row) for row in session.execute(stmt).scalars()]

    def count_rankings(self, ranking_filter: RankingFilter) -> int:
        stmt = (
            select(func.count())
            .select_from(RankingRow)
            .where(*self._ranking_conditions(ranking_filter))
        )
        with self._session() as session:
            return session.execute(stmt).scalar_one()

    def distinct_ranked_article_ids(self) -> set[str]:
        stmt = (
            select(RankingRow.dispatch_article_id)
            .where(RankingRow.dispatch_article_id.isnot(None))
            .distinct()
        )
        with self._session() as session:
            return set(session.execute(stmt).scalars())

    def create_notification_job(
        self, channel: str, target: str, payload: dict
    ) -> NotificationJob:
        now = time.time()
        with self._session() as session:
            row = NotificationJobRow(
                job_id=uuid.uuid4().hex,
                channel=channel,
                target=target,
                payload=payload,
                status=NotificationStatus.WAITING.value,
                attempts=0,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_job(row)

    def get_notification_job(self, job_id: str) -> Optional[NotificationJob]:
        with self._session() as session:
            row = session.get(NotificationJobRow, job_id)
            return self._to_job(row) if row else None

    def update_notification_job(
        self,
        job_id: str,
        *,
        status: Optional[NotificationStatus] = None,
        attempts: Optional[int] = None,
        last_error: Optional[str] = None,
    ) -> None:
        with self._session() as session:
            row = session.get(NotificationJobRow, job_id)
            if not row:
                return
            if status:
                row.status = status.value
            if attempts is not None:
                row.attempts = attempts
            if last_error is not None:
                row.last_error = last_error
            row.updated_at = time.time()
            session.commit()


Base = declarative_base()


class ArticleRow(Base):
    __tablename__ = "dispatch_articles"

    id = Column(String, primary_key=True)
    guid = Column(String, nullable=False, unique=True)
    link = Column(String, nullable=False)
    title = Column(String, nullable=False)
    author = Column(String, nullable=True)
    category = Column(String, nullable=True, index=True)
    content = Column(Text, nullable=True)
    content_snippet = Column(Text, nullable=True)
    published_at_ms = Column(BigInteger, nullable=False)
    relevance_score = Column(Float, nullable=False, default=-1.0)
    rss_link_id = Column(String, nullable=True)
    tier = Column(String, nullable=True)
    extra = Column(JSON, nullable=False, default=dict)


class RankingRow(Base):
    __tablename__ = "tonka_dispatch_rankings"

    id = Column(String, primary_key=True)
    batch_id = Column(String, nullable=False, index=True)
    rank = Column(Integer, nullable=True)
    dispatch_article_id = Column(String, nullable=True, index=True)
    canonical_id = Column(String, nullable=True)
    category = Column(String, nullable=True)
    title = Column(String, nullable=True)
    link = Column(String, nullable=True)
    snippet = Column(Text, nullable=True)
    source_name = Column(String, nullable=True)
    creator = Column(String, nullable=True)
    article_host = Column(String, nullable=True)
    article_root_domain = Column(String, nullable=True)
    feed_match_status = Column(String, nullable=True)
    feed_match_reason = Column(Text, nullable=True)
    match_method = Column(String, nullable=True)
    pub_date_ms = Column(BigInteger, nullable=True)
    tonka_dispatch_rss_links_id = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)


class NotificationJobRow(Base):
    __tablename__ = "notification_jobs"

    job_id = Column(String, primary_key=True)
    channel = Column(String, nullable=False)
    target = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    status = Column(String, nullable=False, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


_RANKING_COLUMNS: Sequence[str] = tuple(c.name for c in RankingRow.__table__.columns)
