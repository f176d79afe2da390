"""Shared fixtures: a throwaway app on a temp SQLite file, fake DNS, fake HTTP responses."""

import socket

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from gamewatch import create_app, db, worker
from gamewatch import ssrf
from gamewatch.config import Config
from gamewatch.igdb import igdb_client
from gamewatch.models import RssFeed

PUBLIC_IP = '93.184.216.34'


class FakeResponse:
    """Just enough of requests.Response for the clients under test."""

    def __init__(self, status_code=200, json_data=None, content=b'', headers=None, reason='OK'):
        self.status_code = status_code
        self._json = json_data
        self.content = content if isinstance(content, bytes) else content.encode('utf-8')
        self.headers = CaseInsensitiveDict(headers or {})
        self.reason = reason
        self.is_redirect = status_code in (301, 302, 303, 307, 308) and 'Location' in self.headers

    @property
    def ok(self):
        return self.status_code < 400

    @property
    def text(self):
        return self.content.decode('utf-8')

    def json(self):
        if self._json is None:
            raise ValueError("No JSON body")
        return self._json

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f"{self.status_code} {self.reason}")


@pytest.fixture
def fake_response():
    return FakeResponse


@pytest.fixture(autouse=True)
def fake_dns(monkeypatch):
    """Every hostname resolves to a public address unless listed here."""
    hosts = {
        'localhost': {'127.0.0.1'},
        'metadata.internal': {'169.254.169.254'},
        'nas.lan': {'192.168.1.20'},
        'mixed.example': {PUBLIC_IP, '169.254.169.254'},
    }

    def _resolve(hostname):
        if hostname.endswith('.invalid'):
            raise socket.gaierror(-2, 'Name or service not known')
        return hosts.get(hostname, {PUBLIC_IP})

    monkeypatch.setattr(ssrf, '_resolve', _resolve)
    return hosts


class TestConfig(Config):
    TESTING = True
    SCHEDULER_ENABLED = False
    SECRET_KEY = 'test'
    TWITCH_CLIENT_ID = 'test-client'
    TWITCH_CLIENT_SECRET = 'test-secret'
    XREL_API_BASE = 'https://api.xrel.to'
    STEAM_PAGE_DELAY_SECONDS = 0
    SSRF_ALLOW_PRIVATE = True
    BATCH_SIZE = 100


@pytest.fixture
def make_app(tmp_path):
    """Builds apps on a temp SQLite file. Keyword arguments override config values."""
    apps = []

    def _make(**overrides):
        config_class = type('_Config', (TestConfig,), {
            'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'gamewatch-test.db'}",
            **overrides,
        })
        app = create_app(config_class)
        igdb_client.cache.clear()
        apps.append(app)
        return app

    yield _make

    worker.shutdown()
    igdb_client.cache.clear()
    for app in apps:
        with app.app_context():
            db.session.remove()
            db.drop_all()


@pytest.fixture
def app(make_app):
    return make_app()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def no_preset_feeds(app):
    """Disables the seeded preset feed so refresh tests only see their own feeds."""
    with app.app_context():
        RssFeed.query.filter_by(type='preset').update({'enabled': False})
        db.session.commit()
