# /gamewatch/gamewatch/xrel.py

"""
xREL.to API client. Only game releases (ext_info type 'master_game') are
returned. The API allows 900 calls per hour and two search calls per five
seconds, so every call waits its turn on the interval limiter and counts
against the hourly quota. Both are `ratelimit` fixed windows: the interval
one sleeps and retries, the quota one raises.
"""

# --- Standard Library Imports ---
import time

# --- Third-Party Library Imports ---
import requests
from flask import current_app
from ratelimit import RateLimitException, limits, sleep_and_retry

# --- Local Application Imports ---
from .ssrf import safe_get
from .storage import get_setting

DEFAULT_XREL_BASE = 'https://api.xrel.to'
GAME_TYPE = 'master_game'
SEARCH_MIN_INTERVAL = 2.5
HOURLY_LIMIT = 900
HOUR = 3600


class XrelError(Exception):
    pass


class XrelRateLimitError(XrelError):
    pass


class XrelApiError(XrelError):

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


def is_game_release(release):
    return (release.get('ext_info') or {}).get('type') == GAME_TYPE


def _scene_item(release):
    size = release.get('size') or {}
    return {
        'id': release.get('id'),
        'dirname': release.get('dirname'),
        'link_href': release.get('link_href'),
        'time': release.get('time') or 0,
        'group_name': release.get('group_name') or '',
        'size_mb': size.get('number'),
        'size_unit': size.get('unit'),
        'ext_info': release.get('ext_info'),
        'source': 'scene',
    }


def _p2p_item(release):
    return {
        'id': release.get('id'),
        'dirname': release.get('dirname'),
        'link_href': release.get('link_href'),
        'time': release.get('pub_time') or 0,
        'group_name': (release.get('group') or {}).get('name') or '',
        'size_mb': release.get('size_mb'),
        'size_unit': 'MB',
        'ext_info': release.get('ext_info'),
        'source': 'p2p',
    }


def merge_game_releases(scene=None, p2p=None):
    """Normalizes scene and p2p results into one list, newest first."""
    releases = [_scene_item(r) for r in (scene or []) if is_game_release(r)]
    releases += [_p2p_item(r) for r in (p2p or []) if is_game_release(r)]
    return sorted(releases, key=lambda r: r['time'], reverse=True)


def _noop():
    pass


class XrelClient:

    def __init__(self, base_url=None, min_interval=SEARCH_MIN_INTERVAL, hourly_limit=HOURLY_LIMIT,
                 clock=time.monotonic):
        self._base_url = base_url
        self.hourly_limit = hourly_limit
        # One call per interval window; overlapping callers sleep until their turn
        self._wait_turn = sleep_and_retry(limits(calls=1, period=min_interval, clock=clock)(_noop))
        self._count_call = limits(calls=hourly_limit, period=HOUR, clock=clock)(_noop)

    @property
    def base_url(self):
        base = self._base_url or get_setting('xrel_api_base', 'XREL_API_BASE') or DEFAULT_XREL_BASE
        return base.strip().rstrip('/')

    def _get(self, path, params):
        self._wait_turn()
        try:
            self._count_call()
        except RateLimitException as e:
            raise XrelRateLimitError(
                f"xREL API hourly rate limit exceeded ({self.hourly_limit}/hour), "
                f"resets in {int(e.period_remaining)}s"
            ) from e

        base = self.base_url
        # A self-hosted mirror is configured by the admin
        allow_private = True if base != DEFAULT_XREL_BASE else None
        try:
            response = safe_get(
                f"{base}{path}", params=params, allow_private=allow_private,
                headers={'Accept': 'application/json'},
            )
        except requests.RequestException as e:
            raise XrelApiError(f"xREL API request failed: {e}") from e

        if response.status_code == 429:
            raise XrelRateLimitError("xREL API rate limit exceeded (Too Many Requests)")
        if not response.ok:
            raise XrelApiError(f"xREL API error: {response.status_code} {response.reason}", response.status_code)
        try:
            return response.json()
        except ValueError as e:
            raise XrelApiError(f"xREL API returned invalid JSON: {e}") from e

    def search_releases(self, query, scene=True, p2p=False, limit=25):
        """Searches scene and/or p2p releases and returns game releases only."""
        limit = min(max(1, limit or 25), 100)
        current_app.logger.info(f"Searching xREL for '{query}' (scene={scene}, p2p={p2p})")
        data = self._get('/v2/search/releases.json', {
            'q': (query or '').strip(),
            'scene': '1' if scene else '0',
            'p2p': '1' if p2p else '0',
            'limit': str(limit),
        })
        return merge_game_releases(data.get('results'), data.get('p2p_results'))

    def get_latest_releases(self, page=1, per_page=50):
        page = max(1, page or 1)
        per_page = min(100, max(1, per_page or 50))
        data = self._get('/v2/release/latest.json', {'page': str(page), 'per_page': str(per_page)})
        return {
            'list': merge_game_releases(scene=data.get('list')),
            'pagination': data.get('pagination'),
            'total_count': data.get('total_count') or 0,
        }


xrel_client = XrelClient()
