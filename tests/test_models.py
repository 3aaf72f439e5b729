import asyncio
from datetime import datetime, timezone

import pytest

from errors import StorageError, ConflictError, DuplicateFeedError, DuplicatePostError
from models import DatabaseQueue


def _post(guid, **fields):
    post = {
        'guid': guid,
        'title': f"Post {guid}",
        'link': f"https://example.com/{guid}",
        'description': '',
        'content': '',
        'author': '',
        'published_at': None,
        'image_url': '',
    }
    post.update(fields)
    return post


@pytest.mark.asyncio
async def test_create_and_list_feeds(db):
    b = await db.execute('create_feed', name='Beta', url='https://b.example.com/rss')
    a = await db.execute('create_feed', name='Alpha', url='https://a.example.com/rss', category='Tech')

    assert a['category'] == 'Tech'
    assert a['is_active'] is True
    assert a['last_fetched_at'] is None
    assert a['error_count'] == 0
    assert a['created_at'].tzinfo is not None

    feeds = await db.execute('list_feeds')
    assert [feed['id'] for feed in feeds] == [a['id'], b['id']]
    assert await db.execute('get_feed', feed_id=a['id']) == a


@pytest.mark.asyncio
async def test_duplicate_feed_url_is_rejected(db):
    await db.execute('create_feed', name='One', url='https://example.com/rss')

    with pytest.raises(DuplicateFeedError) as excinfo:
        await db.execute('create_feed', name='Two', url='https://example.com/rss')

    assert excinfo.value.url == 'https://example.com/rss'
    assert len(await db.execute('list_feeds')) == 1


@pytest.mark.asyncio
async def test_missing_lookups_return_none(db):
    feed = await db.execute('create_feed', name='Feed', url='https://example.com/rss')

    assert await db.execute('get_feed', feed_id=9999) is None
    assert await db.execute('get_post_by_guid', feed_id=feed['id'], guid='nope') is None


@pytest.mark.asyncio
async def test_create_post_conflict_is_distinguishable(db):
    feed = await db.execute('create_feed', name='Feed', url='https://example.com/rss')
    post_id = await db.execute('create_post', feed_id=feed['id'], post=_post('g1'))
    assert post_id > 0

    with pytest.raises(DuplicatePostError) as excinfo:
        await db.execute('create_post', feed_id=feed['id'], post=_post('g1', title='Changed'))

    assert isinstance(excinfo.value, ConflictError)
    assert excinfo.value.guid == 'g1'
    assert await db.execute('count_posts', feed_id=feed['id']) == 1
    stored = await db.execute('get_post_by_guid', feed_id=feed['id'], guid='g1')
    assert stored['title'] == 'Post g1'


@pytest.mark.asyncio
async def test_same_guid_allowed_in_different_feeds(db):
    one = await db.execute('create_feed', name='One', url='https://one.example.com/rss')
    two = await db.execute('create_feed', name='Two', url='https://two.example.com/rss')

    await db.execute('create_post', feed_id=one['id'], post=_post('shared'))
    await db.execute('create_post', feed_id=two['id'], post=_post('shared'))

    assert await db.execute('count_posts') == 2


@pytest.mark.asyncio
async def test_post_fields_round_trip(db):
    feed = await db.execute('create_feed', name='Feed', url='https://example.com/rss')
    published = datetime(2025, 1, 6, 10, 0, tzinfo=timezone.utc)
    await db.execute('create_post', feed_id=feed['id'], post=_post(
        'g1', author='Jane Doe', published_at=published, image_url='https://example.com/a.png',
    ))

    stored = await db.execute('get_post_by_guid', feed_id=feed['id'], guid='g1')
    assert stored['author'] == 'Jane Doe'
    assert stored['published_at'] == published
    assert stored['image_url'] == 'https://example.com/a.png'
    assert stored['is_read'] is False

    posts = await db.execute('list_posts', feed_id=feed['id'])
    assert [post['guid'] for post in posts] == ['g1']
    assert posts[0]['feed_name'] == 'Feed'


@pytest.mark.asyncio
async def test_delete_feed_cascades_to_posts(db):
    feed = await db.execute('create_feed', name='Feed', url='https://example.com/rss')
    await db.execute('create_post', feed_id=feed['id'], post=_post('g1'))
    await db.execute('create_post', feed_id=feed['id'], post=_post('g2'))

    assert await db.execute('delete_feed', feed_id=feed['id']) is True

    assert await db.execute('count_posts') == 0
    assert await db.execute('delete_feed', feed_id=feed['id']) is False


@pytest.mark.asyncio
async def test_error_bookkeeping(db):
    feed = await db.execute('create_feed', name='Feed', url='https://example.com/rss')

    assert await db.execute('record_feed_error', feed_id=feed['id'], last_error='HTTP 500') == 1
    assert await db.execute('record_feed_error', feed_id=feed['id'], last_error='HTTP 503') == 2

    stored = await db.execute('get_feed', feed_id=feed['id'])
    assert stored['error_count'] == 2
    assert stored['last_error'] == 'HTTP 503'
    assert stored['last_fetched_at'] is None

    await db.execute('reset_feed_error', feed_id=feed['id'])
    assert await db.execute('get_feed_error_info', feed_id=feed['id']) == {'error_count': 0, 'last_error': None}


@pytest.mark.asyncio
async def test_update_last_fetched(db):
    feed = await db.execute('create_feed', name='Feed', url='https://example.com/rss')
    fetched_at = datetime(2025, 3, 1, 12, 30, tzinfo=timezone.utc)

    assert await db.execute('update_last_fetched', feed_id=feed['id'], fetched_at=fetched_at) is True

    stored = await db.execute('get_feed', feed_id=feed['id'])
    assert stored['last_fetched_at'] == fetched_at
    assert stored['updated_at'] >= stored['created_at']


@pytest.mark.asyncio
async def test_list_active_feeds_filters_inactive(db):
    active = await db.execute('create_feed', name='Active', url='https://a.example.com/rss')
    inactive = await db.execute('create_feed', name='Inactive', url='https://i.example.com/rss', is_active=False)
    paused = await db.execute('create_feed', name='Paused', url='https://p.example.com/rss')
    await db.execute('set_feed_active', feed_id=paused['id'], is_active=False)

    ids = [feed['id'] for feed in await db.execute('list_active_feeds')]

    assert ids == [active['id']]
    assert inactive['is_active'] is False


@pytest.mark.asyncio
async def test_seed_default_feeds_only_when_empty(db):
    seeds = [
        {'name': 'Hacker News', 'url': 'https://news.ycombinator.com/rss', 'category': 'Tech'},
        {'name': 'Ars Technica', 'url': 'https://feeds.arstechnica.com/arstechnica/index'},
    ]

    assert await db.execute('seed_default_feeds', seeds=seeds) == 2
    assert await db.execute('seed_default_feeds', seeds=seeds) == 0
    assert len(await db.execute('list_feeds')) == 2


@pytest.mark.asyncio
async def test_unknown_operation_raises_storage_error(db):
    with pytest.raises(StorageError):
        await db.execute('drop_everything')


@pytest.mark.asyncio
async def test_execute_on_stopped_queue_raises(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "stopped.db"))

    with pytest.raises(StorageError):
        await queue.execute('list_feeds')

    await queue.start()
    await queue.stop()
    with pytest.raises(StorageError):
        await queue.execute('list_feeds')


@pytest.mark.asyncio
async def test_cancelled_caller_leaves_no_pending_state(db):
    task = asyncio.create_task(db.execute('list_feeds'))
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    # Queue is FIFO, so the cancelled operation has been handled by now
    assert await db.execute('list_feeds') == []
    assert db.results == {}
    assert db.events == {}


@pytest.mark.asyncio
async def test_start_fails_for_unopenable_database(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "missing-dir" / "rssy.db"))

    with pytest.raises(StorageError):
        await queue.start()
    assert queue.running is False


@pytest.mark.asyncio
async def test_reopen_existing_database_keeps_data(tmp_path):
    path = str(tmp_path / "reopen.db")
    first = DatabaseQueue(path)
    await first.start()
    await first.execute('create_feed', name='Feed', url='https://example.com/rss')
    await first.stop()

    second = DatabaseQueue(path)
    await second.start()
    try:
        assert [feed['name'] for feed in await second.execute('list_feeds')] == ['Feed']
    finally:
        await second.stop()
