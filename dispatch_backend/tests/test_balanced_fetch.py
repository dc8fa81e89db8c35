import threading
import time
import unittest

from dispatch_backend.balanced_fetch import fetch_balanced_articles
from dispatch_backend.db import ArticleFilter, DispatchArticle, InMemoryDbClient
from dispatch_backend.errors import FetchCancelledError, StoreUnavailableError

BY_SCORE = (("relevance.score", -1),)


def make_article(category, index, score=None):
    return DispatchArticle(
        id=f"{category}-{index:03d}",
        guid=f"guid-{category}-{index}",
        link=f"https://example.test/{category}/{index}",
        title=f"{category} story {index}",
        published_at_ms=1_700_000_000_000 + index,
        category=category,
        relevance_score=float(score if score is not None else 90 - index),
    )


def seed(db, counts):
    for category, count in counts.items():
        for index in range(count):
            db.upsert_article(make_article(category, index))


class CountingStore:
    def __init__(self, inner):
        self.inner = inner
        self.calls = []

    def query_articles(self, article_filter, sort, limit, skip=0):
        self.calls.append((article_filter, limit))
        return self.inner.query_articles(article_filter, sort, limit, skip)


class FailingStore:
    def __init__(self, inner, fail_on_call):
        self.inner = inner
        self.fail_on_call = fail_on_call
        self.calls = 0

    def query_articles(self, article_filter, sort, limit, skip=0):
        self.calls += 1
        if self.calls == self.fail_on_call:
            raise StoreUnavailableError("connection refused")
        return self.inner.query_articles(article_filter, sort, limit, skip)


class DuplicatingStore:
    """Ignores filters and always returns the same document."""

    def __init__(self, article):
        self.article = article

    def query_articles(self, article_filter, sort, limit, skip=0):
        return [self.article]


def counts_by_category(articles):
    counts = {}
    for article in articles:
        counts[article.category] = counts.get(article.category, 0) + 1
    return counts


class BalancedFetchTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()

    def fetch(self, store, target, categories, **kwargs):
        return fetch_balanced_articles(
            store, ArticleFilter(), BY_SCORE, target, categories=categories, **kwargs
        )

    def test_news_tech_culture_scenario(self):
        seed(self.db, {"news": 5, "tech": 1, "culture": 10})
        store = CountingStore(self.db)

        result = self.fetch(store, 9, ["news", "tech", "culture"])

        self.assertEqual(len(result.articles), 9)
        self.assertEqual(result.first_pass_count, 7)
        self.assertEqual(result.backfill_iterations, 1)
        self.assertEqual(
            counts_by_category(result.articles), {"news": 4, "tech": 1, "culture": 4}
        )
        self.assertEqual(result.tally["news"].fetched, 4)
        self.assertEqual(result.tally["tech"].fetched, 1)
        self.assertEqual(result.tally["culture"].target, 3)
        self.assertEqual(result.queries_issued, 6)
        self.assertEqual(len(store.calls), 6)

    def test_exact_fill_after_first_pass_truncates_category_major(self):
        seed(self.db, {"a": 5, "b": 5, "c": 5})
        store = CountingStore(self.db)

        result = self.fetch(store, 7, ["a", "b", "c"])

        self.assertEqual(len(store.calls), 3)
        self.assertEqual(result.backfill_iterations, 0)
        self.assertEqual(
            [a.id for a in result.articles],
            ["a-000", "a-001", "a-002", "b-000", "b-001", "b-002", "c-000"],
        )
        self.assertEqual(result.tally["c"].fetched, 1)
        tallied = [a.id for t in result.tally.values() for a in t.articles]
        self.assertEqual(sorted(tallied), sorted(a.id for a in result.articles))

    def test_first_pass_never_exceeds_per_category_target(self):
        seed(self.db, {"a": 10, "b": 1, "c": 10})
        store = CountingStore(self.db)

        self.fetch(store, 10, ["a", "b", "c"])

        first_pass = store.calls[:3]
        self.assertTrue(all(limit == 4 for _, limit in first_pass))

    def test_backfill_round_robins_single_supplier(self):
        seed(self.db, {"a": 10})
        store = CountingStore(self.db)

        result = self.fetch(store, 6, ["a", "b", "c"])

        self.assertEqual(len(result.articles), 6)
        self.assertEqual(result.first_pass_count, 2)
        self.assertEqual(result.backfill_iterations, 4)
        self.assertEqual(counts_by_category(result.articles), {"a": 6})
        # 3 first-pass queries, 3 full iterations, then one query before target is met.
        self.assertEqual(len(store.calls), 13)
        backfill_limits = {limit for _, limit in store.calls[3:]}
        self.assertEqual(backfill_limits, {1})

    def test_backfill_respects_iteration_cap(self):
        seed(self.db, {"a": 20})
        store = CountingStore(self.db)

        result = self.fetch(store, 30, ["a", "b", "c"])

        self.assertEqual(result.first_pass_count, 10)
        self.assertEqual(result.backfill_iterations, 5)
        self.assertEqual(len(result.articles), 15)
        self.assertEqual(len(store.calls), 3 * 6)
        self.assertEqual(result.queries_issued, 18)

    def test_stops_on_first_iteration_without_progress(self):
        seed(self.db, {"a": 1, "b": 1})
        store = CountingStore(self.db)

        result = self.fetch(store, 9, ["a", "b", "c"])

        self.assertEqual(len(result.articles), 2)
        self.assertEqual(result.backfill_iterations, 1)
        self.assertEqual(len(store.calls), 6)

    def test_backfill_excludes_already_selected_ids(self):
        seed(self.db, {"a": 4, "b": 0})
        store = CountingStore(self.db)

        result = self.fetch(store, 4, ["a", "b"])

        self.assertEqual(len(result.articles), 4)
        backfill_filter, _ = store.calls[2]
        self.assertEqual(backfill_filter.category, "a")
        self.assertEqual(backfill_filter.exclude_ids, {"a-000", "a-001"})
        self.assertEqual(len({a.id for a in result.articles}), 4)

    def test_duplicate_documents_are_skipped(self):
        shared = make_article("a", 0)

        result = self.fetch(DuplicatingStore(shared), 6, ["a", "b", "c"])

        self.assertEqual([a.id for a in result.articles], ["a-000"])
        self.assertEqual(result.backfill_iterations, 1)

    def test_store_errors_propagate(self):
        seed(self.db, {"a": 1})
        for call in (1, 4):
            with self.subTest(fail_on_call=call):
                store = FailingStore(self.db, fail_on_call=call)
                with self.assertRaises(StoreUnavailableError):
                    self.fetch(store, 9, ["a", "b", "c"])

    def test_non_positive_target_issues_no_queries(self):
        seed(self.db, {"a": 3})
        store = CountingStore(self.db)

        for target in (0, -3):
            result = self.fetch(store, target, ["a"])
            self.assertEqual(result.articles, [])
        self.assertEqual(store.calls, [])

    def test_empty_category_list_returns_empty(self):
        store = CountingStore(self.db)
        result = self.fetch(store, 5, [])
        self.assertEqual(result.articles, [])
        self.assertEqual(store.calls, [])

    def test_base_filter_must_not_constrain_category(self):
        with self.assertRaises(ValueError):
            fetch_balanced_articles(
                self.db, ArticleFilter(category="a"), BY_SCORE, 3, categories=["a"]
            )

    def test_base_filter_applies_to_every_query(self):
        seed(self.db, {"a": 6, "b": 6})

        result = fetch_balanced_articles(
            self.db,
            ArticleFilter(score_min=87),
            BY_SCORE,
            10,
            categories=["a", "b"],
        )

        # Scores are 90, 89, 88, 87 per category above the floor.
        self.assertEqual(len(result.articles), 8)
        self.assertTrue(all(a.relevance_score >= 87 for a in result.articles))

    def test_global_sort_reorders_result(self):
        self.db.upsert_article(make_article("a", 0, score=10))
        self.db.upsert_article(make_article("a", 1, score=5))
        self.db.upsert_article(make_article("b", 0, score=50))
        self.db.upsert_article(make_article("b", 1, score=1))

        category_major = self.fetch(self.db, 4, ["a", "b"])
        resorted = self.fetch(self.db, 4, ["a", "b"], global_sort=True)

        self.assertEqual(
            [a.relevance_score for a in category_major.articles], [10, 5, 50, 1]
        )
        self.assertEqual([a.relevance_score for a in resorted.articles], [50, 10, 5, 1])

    def test_cancel_event_stops_before_querying(self):
        seed(self.db, {"a": 3})
        store = CountingStore(self.db)
        event = threading.Event()
        event.set()

        with self.assertRaises(FetchCancelledError):
            self.fetch(store, 3, ["a"], cancel_event=event)
        self.assertEqual(store.calls, [])

    def test_expired_deadline_raises(self):
        seed(self.db, {"a": 3})
        with self.assertRaises(FetchCancelledError):
            self.fetch(self.db, 3, ["a"], deadline=time.monotonic() - 1)


if __name__ == "__main__":
    unittest.main()
