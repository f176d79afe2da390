from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from gamewatch import jobs, scheduler

EXPECTED_JOBS = {
    'rss_refresh_job': (jobs.refresh_rss_feeds, timedelta(minutes=30)),
    'game_update_job': (jobs.check_game_updates, timedelta(hours=24)),
    'xrel_check_job': (jobs.check_xrel_releases, timedelta(hours=6)),
    'steam_wishlist_job': (jobs.check_steam_wishlists, timedelta(hours=24)),
    'auto_search_job': (jobs.check_auto_search, timedelta(minutes=60)),
    'download_status_job': (jobs.check_download_status, timedelta(minutes=1)),
}


@pytest.fixture
def scheduled_app(make_app, monkeypatch):
    start = MagicMock()
    monkeypatch.setattr(scheduler, 'start', start)
    app = make_app(
        SCHEDULER_ENABLED=True,
        RSS_REFRESH_INTERVAL_MINUTES=30,
        GAME_UPDATE_INTERVAL_HOURS=24,
        XREL_CHECK_INTERVAL_HOURS=6,
        STEAM_SYNC_INTERVAL_HOURS=24,
        AUTO_SEARCH_INTERVAL_MINUTES=60,
        DOWNLOAD_STATUS_INTERVAL_MINUTES=1,
    )
    yield app, start
    scheduler.remove_all_jobs()


def test_every_job_is_registered(scheduled_app):
    app, start = scheduled_app

    registered = {job.id: job for job in scheduler.get_jobs()}

    assert set(registered) == set(EXPECTED_JOBS)
    start.assert_called_once_with()
    for job_id, (func, interval) in EXPECTED_JOBS.items():
        job = registered[job_id]
        assert job.func is func
        assert job.trigger.interval == interval
        assert list(job.args) == [app]


def test_jobs_never_overlap_themselves(scheduled_app):
    for job in scheduler.get_jobs():
        assert job.max_instances == 1, job.id
        assert job.coalesce is True, job.id


def test_scheduler_stays_off_when_disabled(make_app, monkeypatch):
    start = MagicMock()
    monkeypatch.setattr(scheduler, 'start', start)

    make_app(SCHEDULER_ENABLED=False)

    start.assert_not_called()
    assert scheduler.get_jobs() == []
