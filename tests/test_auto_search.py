from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from gamewatch import db
from gamewatch import jobs
from gamewatch.downloaders import DownloaderError
from gamewatch.models import Downloader, Game, GameDownload, Notification, User
from gamewatch.storage import get_user_settings
from gamewatch.util import utcnow

MAGNET = 'magnet:?xt=urn:btih:C12FE1C06BBA254A9DC9F519B335AA7C1367A88A&dn=Stardew'


def _item(title, seeders=None, size=None, days_old=0, link=None):
    return {
        'title': title,
        'link': link if link is not None else f"https://indexer.example.com/get/{title}",
        'seeders': seeders,
        'size': size,
        'pub_date': datetime(2024, 5, 10, tzinfo=timezone.utc) - timedelta(days=days_old),
        'indexer': 'Test',
    }


RESULTS = [
    _item('Stardew.Valley.v1.6.8-RUNE', seeders=12, size=500, days_old=3),
    _item('Stardew.Valley.GOG-P2P', seeders=80, size=400, days_old=9),
    _item('Stardew.Valley.MULTi10-ElAmigos', seeders=3, size=900, days_old=1),
    _item('Celeste.v1.4-GOG', seeders=500, size=100),
]


@pytest.fixture
def user_id(app):
    with app.app_context():
        user = User(username='alice')
        db.session.add(user)
        db.session.commit()
        settings = get_user_settings(user.id)
        settings.auto_search_enabled = True
        db.session.commit()
        return user.id


@pytest.fixture
def game_id(app, user_id):
    with app.app_context():
        game = Game(user_id=user_id, title='Stardew Valley', status='wanted', release_status='released')
        db.session.add(game)
        db.session.commit()
        return game.id


@pytest.fixture
def search(monkeypatch):
    mock = MagicMock(return_value={'items': list(RESULTS), 'errors': []})
    monkeypatch.setattr(jobs, 'search_all_indexers', mock)
    return mock


def _update_settings(app, user_id, **values):
    with app.app_context():
        settings = get_user_settings(user_id)
        for key, value in values.items():
            setattr(settings, key, value)
        db.session.commit()


# --- Ranking ---

def test_rank_keeps_matching_results_best_seeded_first():
    ranked = jobs.rank_search_results(RESULTS, 'Stardew Valley')
    assert [item['title'] for item in ranked] == [
        'Stardew.Valley.GOG-P2P', 'Stardew.Valley.v1.6.8-RUNE', 'Stardew.Valley.MULTi10-ElAmigos',
    ]


def test_rank_applies_min_seeders():
    ranked = jobs.rank_search_results(RESULTS, 'Stardew Valley', min_seeders=10)
    assert [item['seeders'] for item in ranked] == [80, 12]


def test_rank_by_size_and_date():
    by_size = jobs.rank_search_results(RESULTS, 'Stardew Valley', sort_by='size')
    by_date = jobs.rank_search_results(RESULTS, 'Stardew Valley', sort_by='date')
    assert [item['size'] for item in by_size] == [900, 500, 400]
    assert by_date[0]['title'] == 'Stardew.Valley.MULTi10-ElAmigos'


def test_rank_drops_results_without_link_and_counts_usenet_as_zero_seeders():
    items = [_item('Stardew.Valley-RUNE', link=''), _item('Stardew.Valley-CODEX')]
    assert [i['title'] for i in jobs.rank_search_results(items, 'Stardew Valley')] == ['Stardew.Valley-CODEX']
    assert jobs.rank_search_results(items, 'Stardew Valley', min_seeders=1) == []


# --- Who gets searched ---

@pytest.mark.parametrize("release_status, include_unreleased, searched", [
    ('released', False, True),
    ('upcoming', False, False),
    ('delayed', False, False),
    ('released', True, True),
    ('upcoming', True, True),
    ('delayed', True, True),
])
def test_unreleased_games_follow_setting(app, user_id, game_id, search, release_status, include_unreleased, searched):
    _update_settings(app, user_id, auto_search_unreleased=include_unreleased)
    with app.app_context():
        db.session.get(Game, game_id).release_status = release_status
        db.session.commit()

    jobs.check_auto_search(app)

    assert search.called is searched
    if searched:
        assert search.call_args.args[0] == 'Stardew Valley'


def test_disabled_user_is_not_searched(app, user_id, game_id, search):
    _update_settings(app, user_id, auto_search_enabled=False)
    assert jobs.check_auto_search(app)['users'] == 0
    search.assert_not_called()


def test_hidden_and_owned_games_are_not_searched(app, user_id, search):
    with app.app_context():
        db.session.add_all([
            Game(user_id=user_id, title='Hidden', status='wanted', release_status='released', hidden=True),
            Game(user_id=user_id, title='Owned', status='owned', release_status='released'),
        ])
        db.session.commit()

    jobs.check_auto_search(app)
    search.assert_not_called()


def test_search_interval_is_respected(app, user_id, game_id, search):
    _update_settings(app, user_id, last_auto_search=utcnow() - timedelta(hours=1), search_interval_hours=6)
    jobs.check_auto_search(app)
    search.assert_not_called()

    _update_settings(app, user_id, last_auto_search=utcnow() - timedelta(hours=7))
    jobs.check_auto_search(app)
    assert search.call_count == 1


def test_last_search_time_is_recorded(app, user_id, game_id, search):
    before = utcnow()
    jobs.check_auto_search(app)

    with app.app_context():
        last = get_user_settings(user_id).last_auto_search
    assert last is not None
    assert last.replace(tzinfo=timezone.utc) >= before.replace(microsecond=0) - timedelta(seconds=1)

    jobs.check_auto_search(app)
    assert search.call_count == 1


# --- What happens with the results ---

def test_single_result_is_announced(app, user_id, game_id, monkeypatch):
    monkeypatch.setattr(jobs, 'search_all_indexers', MagicMock(return_value={'items': RESULTS[:1], 'errors': []}))

    summary = jobs.check_auto_search(app)

    assert summary == {'users': 1, 'searched': 1, 'dispatched': 0, 'notified': 1}
    with app.app_context():
        note = Notification.query.one()
        assert note.title == 'Game Available'
        assert note.user_id == user_id
        assert note.link == f"modal:game:{game_id}"
        assert db.session.get(Game, game_id).status == 'wanted'


def test_multiple_results_only_announced_when_asked(app, user_id, game_id, search):
    jobs.check_auto_search(app)
    with app.app_context():
        assert Notification.query.count() == 0

    _update_settings(app, user_id, notify_multiple_downloads=True, last_auto_search=None)
    jobs.check_auto_search(app)
    with app.app_context():
        note = Notification.query.one()
        assert note.title == 'Multiple Results Found'
        assert note.message.startswith('3 result(s) found for Stardew Valley')


def test_nothing_matching_sends_nothing(app, user_id, game_id, monkeypatch):
    monkeypatch.setattr(jobs, 'search_all_indexers', MagicMock(return_value={
        'items': [RESULTS[3]], 'errors': [{'indexer': 'Down', 'error': 'timed out'}],
    }))
    summary = jobs.check_auto_search(app)
    assert summary['notified'] == 0
    assert summary['searched'] == 1


@pytest.fixture
def downloader_id(app):
    with app.app_context():
        downloader = Downloader(name='Transmission', type='transmission', url='http://nas.lan:9091', enabled=True, priority=1)
        db.session.add(downloader)
        db.session.commit()
        return downloader.id


def test_auto_download_sends_best_result(app, user_id, game_id, downloader_id, search, monkeypatch):
    _update_settings(app, user_id, auto_download_enabled=True)
    add = MagicMock(return_value={
        'success': True, 'id': 'ABC123', 'message': 'Torrent added',
        'downloader': 'Transmission', 'downloader_id': downloader_id, 'errors': [],
    })
    monkeypatch.setattr(jobs.DownloaderManager, 'add_download_with_fallback', add)

    summary = jobs.check_auto_search(app)

    assert summary['dispatched'] == 1
    downloaders, request = add.call_args.args
    assert [d.id for d in downloaders] == [downloader_id]
    assert request == {'url': RESULTS[1]['link'], 'title': 'Stardew.Valley.GOG-P2P'}
    with app.app_context():
        assert db.session.get(Game, game_id).status == 'downloading'
        tracked = GameDownload.query.one()
        assert (tracked.game_id, tracked.downloader_id) == (game_id, downloader_id)
        assert tracked.download_hash == 'ABC123'
        assert tracked.status == 'downloading'
        assert Notification.query.one().title == 'Download Started'


@pytest.mark.parametrize("outcome", [
    {'success': False, 'message': 'No downloader accepted the request', 'errors': []},
    DownloaderError("connection refused"),
])
def test_failed_auto_download_leaves_game_wanted(app, user_id, game_id, downloader_id, search, monkeypatch, outcome):
    _update_settings(app, user_id, auto_download_enabled=True)
    add = MagicMock(side_effect=outcome) if isinstance(outcome, Exception) else MagicMock(return_value=outcome)
    monkeypatch.setattr(jobs.DownloaderManager, 'add_download_with_fallback', add)

    summary = jobs.check_auto_search(app)

    assert summary['dispatched'] == 0
    with app.app_context():
        assert db.session.get(Game, game_id).status == 'wanted'
        assert GameDownload.query.count() == 0
        assert Notification.query.count() == 0


def test_cli_auto_search(app, user_id, game_id, search):
    result = app.test_cli_runner().invoke(args=['auto-search'])
    assert result.exit_code == 0
    assert "1 games searched, 0 sent to downloaders" in result.output


# --- Download status ---

@pytest.fixture
def tracked(app, user_id, downloader_id):
    """Four games mid-download, keyed by title."""
    ids = {}
    with app.app_context():
        for title, download_hash in [('Hades', 'AAA'), ('Celeste', 'BBB'), ('Inside', 'CCC'), ('Limbo', 'DDD')]:
            game = Game(user_id=user_id, title=title, status='downloading', release_status='released')
            db.session.add(game)
            db.session.flush()
            db.session.add(GameDownload(
                game_id=game.id, downloader_id=downloader_id, download_hash=download_hash,
                download_title=f"{title}-GRP", status='downloading',
            ))
            ids[title] = game.id
        db.session.commit()
    return ids


def _remote(download_id, status, progress):
    return {'id': download_id, 'name': download_id, 'status': status, 'progress': progress, 'error': None}


def test_download_status_sync(app, tracked, monkeypatch):
    monkeypatch.setattr(jobs.DownloaderManager, 'get_downloads', MagicMock(return_value=[
        _remote('aaa', 'seeding', 100.0),
        _remote('bbb', 'error', 12.0),
        _remote('ccc', 'paused', 40.0),
        _remote('zzz', 'downloading', 5.0),
    ]))

    summary = jobs.check_download_status(app)

    assert summary == {'checked': 4, 'completed': 2, 'failed': 1}
    with app.app_context():
        games = {g.title: g for g in Game.query.all()}
        downloads = {d.download_hash: d for d in GameDownload.query.all()}
        assert (games['Hades'].status, downloads['AAA'].status) == ('owned', 'completed')
        assert (games['Celeste'].status, downloads['BBB'].status) == ('wanted', 'failed')
        assert (games['Inside'].status, downloads['CCC'].status) == ('downloading', 'paused')
        # Gone from the client
        assert (games['Limbo'].status, downloads['DDD'].status) == ('owned', 'completed')

        titles = sorted(n.title for n in Notification.query.all())
        assert titles == ['Download Completed', 'Download Status Changed']


def test_finished_downloads_are_not_checked_again(app, tracked, monkeypatch):
    get_downloads = MagicMock(return_value=[])
    monkeypatch.setattr(jobs.DownloaderManager, 'get_downloads', get_downloads)

    jobs.check_download_status(app)
    assert jobs.check_download_status(app) == {'checked': 0, 'completed': 0, 'failed': 0}
    assert get_downloads.call_count == 1


def test_unreachable_downloader_changes_nothing(app, tracked, monkeypatch):
    monkeypatch.setattr(jobs.DownloaderManager, 'get_downloads', MagicMock(side_effect=DownloaderError("HTTP 502")))

    summary = jobs.check_download_status(app)

    assert summary == {'checked': 4, 'completed': 0, 'failed': 0}
    with app.app_context():
        assert {g.status for g in Game.query.all()} == {'downloading'}
        assert Notification.query.count() == 0


def test_disabled_downloader_is_skipped(app, tracked, downloader_id, monkeypatch):
    with app.app_context():
        db.session.get(Downloader, downloader_id).enabled = False
        db.session.commit()
    get_downloads = MagicMock()
    monkeypatch.setattr(jobs.DownloaderManager, 'get_downloads', get_downloads)

    jobs.check_download_status(app)
    get_downloads.assert_not_called()


def test_cli_check_downloads(app, tracked, monkeypatch):
    monkeypatch.setattr(jobs.DownloaderManager, 'get_downloads', MagicMock(return_value=[
        _remote('AAA', 'completed', 100.0), _remote('BBB', 'downloading', 10.0),
        _remote('CCC', 'downloading', 10.0), _remote('DDD', 'downloading', 10.0),
    ]))
    result = app.test_cli_runner().invoke(args=['check-downloads'])
    assert result.exit_code == 0
    assert "Checked 4 downloads: 1 completed, 0 failed" in result.output
