import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

import fetcher as fetcher_module
from config import config
from errors import StorageError
from fetcher import FeedFetcher, FetchSummary, EntryOutcome

UNREACHABLE_URL = "http://127.0.0.1:1/feed.xml"


@pytest_asyncio.fixture
async def feed_fetcher(db):
    fetcher = FeedFetcher(db)
    yield fetcher
    await fetcher.close()


def _items(*guids):
    return [
        {
            'guid': guid,
            'title': f"Title {guid}",
            'link': f"https://example.com/{guid}",
            'pub_date': 'Mon, 06 Jan 2025 10:00:00 GMT',
        }
        for guid in guids
    ]


class Clock:
    """Deterministic replacement for fetcher.utcnow."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now


def test_fetch_summary_counts_outcomes():
    summary = FetchSummary(feed_id=1, feed_name='Feed', url='https://example.com/rss')
    for outcome in (EntryOutcome.CREATED, EntryOutcome.CREATED, EntryOutcome.DUPLICATE, EntryOutcome.FAILED):
        summary.record(outcome)

    assert (summary.created, summary.duplicates, summary.failed, summary.total) == (2, 1, 1, 4)
    assert summary.ok is True
    summary.error = 'HTTP 500'
    assert summary.ok is False


@pytest.mark.asyncio
async def test_refetch_creates_no_duplicates_and_advances_last_fetched(db, feed_server, make_rss, monkeypatch):
    url = feed_server.serve('/feed.xml', make_rss(_items('p1', 'p2')))
    feed = await db.execute('create_feed', name='Feed', url=url)
    clock = Clock(datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc))
    monkeypatch.setattr(fetcher_module, 'utcnow', clock)
    fetcher = FeedFetcher(db)

    first = await fetcher.fetch_feed(feed)
    t1 = (await db.execute('get_feed', feed_id=feed['id']))['last_fetched_at']

    clock.now += timedelta(minutes=10)
    second = await fetcher.fetch_feed(feed)
    t2 = (await db.execute('get_feed', feed_id=feed['id']))['last_fetched_at']
    await fetcher.close()

    assert (first.created, first.duplicates) == (2, 0)
    assert (second.created, second.duplicates) == (0, 2)
    assert t1 == datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert t2 > t1
    assert await db.execute('count_posts', feed_id=feed['id']) == 2
    assert feed_server.hits['/feed.xml'] == 2


@pytest.mark.asyncio
async def test_duplicate_guid_within_one_document(db, feed_server, make_rss, feed_fetcher):
    url = feed_server.serve('/feed.xml', make_rss(_items('same', 'same')))
    feed = await db.execute('create_feed', name='Feed', url=url)

    summary = await feed_fetcher.fetch_feed(feed)

    assert (summary.created, summary.duplicates, summary.failed) == (1, 1, 0)
    assert await db.execute('count_posts') == 1


@pytest.mark.asyncio
async def test_unusable_entry_does_not_stop_the_rest(db, feed_server, make_rss, feed_fetcher):
    items = [{}] + _items('p1')
    url = feed_server.serve('/feed.xml', make_rss(items))
    feed = await db.execute('create_feed', name='Feed', url=url)

    summary = await feed_fetcher.fetch_feed(feed)

    assert summary.ok
    assert (summary.created, summary.failed) == (1, 1)
    assert (await db.execute('get_feed', feed_id=feed['id']))['last_fetched_at'] is not None


@pytest.mark.asyncio
async def test_one_failing_source_does_not_affect_others(db, feed_server, make_rss, feed_fetcher):
    good_url = feed_server.serve('/good.xml', make_rss(_items('a', 'b', 'c')))
    broken_url = feed_server.serve('/broken.xml', 'oops', status=500, content_type='text/plain')
    good = await db.execute('create_feed', name='Good', url=good_url)
    broken = await db.execute('create_feed', name='Broken', url=broken_url)
    offline = await db.execute('create_feed', name='Offline', url=UNREACHABLE_URL)
    other_url = feed_server.serve('/other.xml', make_rss(_items('x', 'y')))
    other = await db.execute('create_feed', name='Other', url=other_url)

    summaries = await feed_fetcher.fetch_all_feeds()

    by_id = {summary.feed_id: summary for summary in summaries}
    assert set(by_id) == {good['id'], broken['id'], offline['id'], other['id']}
    assert by_id[other['id']].ok and by_id[other['id']].created == 2
    assert by_id[good['id']].ok and by_id[good['id']].created == 3
    assert by_id[broken['id']].error == 'HTTP 500'
    assert not by_id[offline['id']].ok
    assert await db.execute('count_posts', feed_id=good['id']) == 3

    good_after = await db.execute('get_feed', feed_id=good['id'])
    assert good_after['error_count'] == 0
    assert good_after['last_fetched_at'] is not None
    for failed in (broken, offline):
        after = await db.execute('get_feed', feed_id=failed['id'])
        assert after['error_count'] == 1
        assert after['last_error']
        assert after['last_fetched_at'] is None


@pytest.mark.asyncio
async def test_malformed_document_records_error(db, feed_server, feed_fetcher):
    url = feed_server.serve('/feed.xml', 'this is not a feed at all', content_type='text/plain')
    feed = await db.execute('create_feed', name='Feed', url=url)

    summary = await feed_fetcher.fetch_feed(feed)

    assert not summary.ok
    assert summary.created == 0
    stored = await db.execute('get_feed', feed_id=feed['id'])
    assert stored['error_count'] == 1
    assert stored['last_error'].startswith('Failed to parse feed')
    assert stored['last_fetched_at'] is None
    assert await db.execute('count_posts') == 0


@pytest.mark.asyncio
async def test_success_resets_previous_errors(db, feed_server, make_rss, feed_fetcher):
    url = feed_server.serve('/feed.xml', 'down', status=503, content_type='text/plain')
    feed = await db.execute('create_feed', name='Feed', url=url)

    await feed_fetcher.fetch_feed(feed)
    await feed_fetcher.fetch_feed(feed)
    assert (await db.execute('get_feed', feed_id=feed['id']))['error_count'] == 2

    feed_server.serve('/feed.xml', make_rss(_items('p1')))
    summary = await feed_fetcher.fetch_feed(feed)

    stored = await db.execute('get_feed', feed_id=feed['id'])
    assert summary.ok
    assert stored['error_count'] == 0
    assert stored['last_error'] is None


@pytest.mark.asyncio
async def test_http_errors_are_not_retried(db, feed_server, feed_fetcher, monkeypatch):
    monkeypatch.setattr(config, 'MAX_RETRIES', 2)
    url = feed_server.serve('/feed.xml', 'gone', status=404, content_type='text/plain')
    feed = await db.execute('create_feed', name='Feed', url=url)

    summary = await feed_fetcher.fetch_feed(feed)

    assert summary.error == 'HTTP 404'
    assert feed_server.hits['/feed.xml'] == 1


@pytest.mark.asyncio
async def test_network_errors_are_retried(db, feed_fetcher, monkeypatch):
    monkeypatch.setattr(config, 'MAX_RETRIES', 1)
    feed = await db.execute('create_feed', name='Offline', url=UNREACHABLE_URL)

    summary = await feed_fetcher.fetch_feed(feed)

    assert not summary.ok
    assert 'after 2 attempts' in summary.error


@pytest.mark.asyncio
async def test_invalid_url_is_a_source_failure(db, feed_fetcher):
    feed = await db.execute('create_feed', name='Bad', url='ftp://example.com/feed.xml')

    summary = await feed_fetcher.fetch_feed(feed)

    assert not summary.ok
    assert (await db.execute('get_feed', feed_id=feed['id']))['error_count'] == 1


@pytest.mark.asyncio
async def test_concurrent_fetches_of_same_source_store_each_entry_once(db, feed_server, make_rss, feed_fetcher):
    url = feed_server.serve('/feed.xml', make_rss(_items('p1', 'p2')))
    feed = await db.execute('create_feed', name='Feed', url=url)

    results = await asyncio.gather(feed_fetcher.fetch_feed(feed), feed_fetcher.fetch_feed(feed))

    assert sum(summary.created for summary in results) == 2
    assert sum(summary.duplicates for summary in results) == 2
    assert await db.execute('count_posts') == 2


@pytest.mark.asyncio
async def test_inactive_sources_are_skipped(db, feed_server, make_rss, feed_fetcher):
    active_url = feed_server.serve('/active.xml', make_rss(_items('a')))
    inactive_url = feed_server.serve('/inactive.xml', make_rss(_items('b')))
    await db.execute('create_feed', name='Active', url=active_url)
    inactive = await db.execute('create_feed', name='Inactive', url=inactive_url, is_active=False)

    summaries = await feed_fetcher.fetch_all_feeds()
    explicit = await feed_fetcher.fetch_all_feeds([inactive])

    assert [summary.feed_name for summary in summaries] == ['Active']
    assert explicit == []
    assert feed_server.hits['/inactive.xml'] == 0


@pytest.mark.asyncio
async def test_fetch_all_without_sources_returns_empty(db, feed_fetcher):
    assert await feed_fetcher.fetch_all_feeds() == []


@pytest.mark.asyncio
async def test_fetch_all_propagates_store_unavailable(db, feed_fetcher):
    await db.stop()

    with pytest.raises(StorageError):
        await feed_fetcher.fetch_all_feeds()


@pytest.mark.asyncio
async def test_storage_failure_on_entry_is_counted(db, feed_server, make_rss, feed_fetcher, monkeypatch):
    url = feed_server.serve('/feed.xml', make_rss(_items('p1', 'p2')))
    feed = await db.execute('create_feed', name='Feed', url=url)
    original = db.create_post

    def flaky_create_post(feed_id, post):
        if post['guid'] == 'p1':
            raise StorageError("disk full")
        return original(feed_id, post)

    monkeypatch.setattr(db, 'create_post', flaky_create_post)

    summary = await feed_fetcher.fetch_feed(feed)

    assert summary.ok
    assert (summary.created, summary.failed) == (1, 1)
    assert await db.execute('get_post_by_guid', feed_id=feed['id'], guid='p2') is not None


@pytest.mark.asyncio
async def test_slow_source_times_out_without_blocking_others(db, feed_server, make_rss, feed_fetcher, monkeypatch):
    monkeypatch.setattr(config, 'HTTP_TIMEOUT', 0.3)
    slow_url = feed_server.serve('/slow.xml', make_rss(_items('s1')), delay=2)
    good_url = feed_server.serve('/good.xml', make_rss(_items('g1', 'g2')))
    slow = await db.execute('create_feed', name='Slow', url=slow_url)
    good = await db.execute('create_feed', name='Good', url=good_url)

    summaries = await feed_fetcher.fetch_all_feeds()

    by_id = {summary.feed_id: summary for summary in summaries}
    assert not by_id[slow['id']].ok
    assert 'Timed out' in by_id[slow['id']].error
    assert by_id[good['id']].ok and by_id[good['id']].created == 2
    assert await db.execute('count_posts', feed_id=slow['id']) == 0

    stored = await db.execute('get_feed', feed_id=slow['id'])
    assert stored['error_count'] == 1
    assert stored['last_error'].startswith('Timed out')
    assert stored['last_fetched_at'] is None


@pytest.mark.asyncio
async def test_close_releases_executor_and_can_repeat(db):
    fetcher = FeedFetcher(db)
    assert fetcher.executor is not None

    await fetcher.close()
    assert fetcher.executor is None

    await fetcher.close()
    assert fetcher.executor is None
