# /gamewatch/gamewatch/indexers.py

"""
Indexer search clients. Every client returns items in the same shape:
{title, link, category, size, seeders, leechers, grabs, pub_date, guid, indexer}.
"""

# --- Standard Library Imports ---
import calendar
import urllib.parse
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

# --- Third-Party Library Imports ---
import feedparser
import requests
from flask import current_app

# --- Local Application Imports ---
from .models import Indexer
from .ssrf import UnsafeUrlError, safe_get
from .util import safe_int

DEFAULT_CATEGORIES = '4000,1000'
NEWZNAB_NS = '{http://www.newznab.com/DTD/2010/feeds/attributes/}'


class IndexerError(Exception):
    pass


def _api_url(base_url):
    """Appends '/api' unless the configured URL already points at it."""
    parsed = urllib.parse.urlsplit(base_url.strip())
    path = parsed.path
    if '/api' not in path:
        path = path.rstrip('/') + '/api'
    return urllib.parse.urlunsplit((parsed.scheme, parsed.netloc, path, '', ''))


def _categories(indexer):
    return (indexer.categories or '').replace(' ', '') or DEFAULT_CATEGORIES


def _result(indexer, /, **fields):
    item = {
        'title': None, 'link': None, 'category': [], 'size': None, 'seeders': None,
        'leechers': None, 'grabs': None, 'pub_date': None, 'guid': None, 'indexer': indexer.name,
    }
    item.update(fields)
    return item


class BaseIndexerClient:

    def __init__(self, indexer):
        self.indexer = indexer

    def _fetch(self, url, params=None, headers=None):
        # Indexer endpoints are admin-configured and usually on the LAN
        try:
            response = safe_get(url, params=params, headers=headers, allow_private=True, timeout=30)
        except requests.RequestException as e:
            raise IndexerError(f"{self.indexer.name}: request failed: {e}") from e
        if not response.ok:
            raise IndexerError(f"{self.indexer.name}: HTTP {response.status_code} {response.reason}")
        return response

    def search(self, query, limit=50):
        raise NotImplementedError


class TorznabClient(BaseIndexerClient):
    """Torznab (Jackett and friends). The feed is parsed with feedparser."""

    def _attributes(self, item):
        torznab_attr = item.get('torznab_attr', [])
        attributes = {}
        if isinstance(torznab_attr, dict):
            torznab_attr = [torznab_attr]
        for attr in torznab_attr:
            if isinstance(attr, dict):
                name = attr.get('@name', attr.get('name'))
                value = attr.get('@value', attr.get('value'))
                if name is not None and value is not None:
                    attributes[name] = value
        return attributes

    def search(self, query, limit=50):
        params = {
            'apikey': self.indexer.api_key or '',
            't': 'search',
            'q': query,
            'cat': _categories(self.indexer),
            'limit': limit,
        }
        response = self._fetch(_api_url(self.indexer.url), params=params)
        feed = feedparser.parse(response.content)

        results = []
        for item in feed.entries:
            links = item.get('links', [])
            link_obj = next(
                (l for l in links if 'magnet:' in l.get('href', '') or l.get('type') == 'application/x-bittorrent'),
                None,
            )
            link = link_obj.get('href') if link_obj else item.get('link')
            if not item.get('title') or not link:
                continue

            attributes = self._attributes(item)
            seeders = next((safe_int(attributes[k]) for k in ('seeders', 'seeds', 'seeder') if k in attributes), 0)
            leechers = next((safe_int(attributes[k]) for k in ('leechers', 'leeches', 'leech') if k in attributes), 0)
            if not leechers:
                for peer_key in ('peers', 'peer'):
                    if peer_key in attributes:
                        leechers = max(0, safe_int(attributes[peer_key]) - seeders)
                        break

            published = item.get('published_parsed')
            results.append(_result(
                self.indexer,
                title=item.title,
                link=link,
                category=[c for c in [attributes.get('category'), item.get('category')] if c],
                size=safe_int(attributes.get('size') or item.get('size'), None),
                seeders=seeders,
                leechers=leechers,
                grabs=safe_int(attributes.get('grabs') or item.get('grabs'), None),
                pub_date=datetime.fromtimestamp(calendar.timegm(published), tz=timezone.utc) if published else None,
                guid=item.get('guid') or item.get('id') or link,
            ))
        return results


class NewznabClient(BaseIndexerClient):
    """Newznab (usenet). Parsed with ElementTree so newznab:attr lists survive."""

    def search(self, query, limit=50):
        params = {
            'apikey': self.indexer.api_key or '',
            't': 'search',
            'q': query,
            'cat': _categories(self.indexer),
            'limit': limit,
            'extended': 1,
        }
        response = self._fetch(_api_url(self.indexer.url), params=params)
        try:
            root = ET.fromstring(response.content)
        except ET.ParseError as e:
            raise IndexerError(f"{self.indexer.name}: invalid XML: {e}") from e

        if root.tag == 'error':
            raise IndexerError(f"{self.indexer.name}: {root.get('description') or root.get('code')}")

        results = []
        for item in root.iter('item'):
            attributes = {
                attr.get('name'): attr.get('value')
                for attr in item.findall(f'{NEWZNAB_NS}attr')
                if attr.get('name')
            }
            enclosure = item.find('enclosure')
            link = item.findtext('link') or (enclosure.get('url') if enclosure is not None else None)
            title = item.findtext('title')
            if not title or not link:
                continue

            size = attributes.get('size') or (enclosure.get('length') if enclosure is not None else None)
            pub_date = None
            if item.findtext('pubDate'):
                try:
                    pub_date = parsedate_to_datetime(item.findtext('pubDate'))
                except (TypeError, ValueError):
                    pub_date = None

            results.append(_result(
                self.indexer,
                title=title,
                link=link,
                category=[c.text for c in item.findall('category') if c.text],
                size=safe_int(size, None),
                grabs=safe_int(attributes.get('grabs'), None),
                pub_date=pub_date,
                guid=item.findtext('guid') or link,
            ))
        return results


class ProwlarrClient(BaseIndexerClient):
    """Prowlarr aggregator search (JSON API)."""

    def search(self, query, limit=50):
        params = [('query', query), ('type', 'search'), ('limit', limit)]
        params += [('categories', c) for c in _categories(self.indexer).split(',') if c]
        url = f"{self.indexer.url.rstrip('/')}/api/v1/search"
        response = self._fetch(url, params=params, headers={'X-Api-Key': self.indexer.api_key or ''})
        try:
            data = response.json()
        except ValueError as e:
            raise IndexerError(f"{self.indexer.name}: invalid JSON: {e}") from e

        results = []
        for item in data or []:
            link = item.get('magnetUrl') or item.get('downloadUrl')
            if not item.get('title') or not link:
                continue
            publish_date = item.get('publishDate')
            try:
                pub_date = datetime.fromisoformat(publish_date.replace('Z', '+00:00')) if publish_date else None
            except ValueError:
                pub_date = None
            results.append(_result(
                self.indexer,
                title=item['title'],
                link=link,
                category=[str(c.get('id')) for c in item.get('categories', []) if isinstance(c, dict)],
                size=item.get('size'),
                seeders=item.get('seeders'),
                leechers=item.get('leechers'),
                grabs=item.get('grabs'),
                pub_date=pub_date,
                guid=item.get('guid') or link,
                indexer=item.get('indexer') or self.indexer.name,
            ))
        return results


INDEXER_CLIENTS = {
    'torznab': TorznabClient,
    'newznab': NewznabClient,
    'prowlarr': ProwlarrClient,
}


def get_indexer_client(indexer):
    client_class = INDEXER_CLIENTS.get((indexer.type or '').lower())
    if client_class is None:
        raise IndexerError(f"Unsupported indexer type: {indexer.type}")
    return client_class(indexer)


def search_all_indexers(query, limit=50, indexers=None):
    """
    Searches every enabled indexer. One failing indexer is reported in
    'errors' and never stops the others.
    """
    if indexers is None:
        indexers = Indexer.query.filter_by(enabled=True).order_by(Indexer.priority).all()

    items, errors = [], []
    for indexer in indexers:
        try:
            found = get_indexer_client(indexer).search(query, limit=limit)
            current_app.logger.info(f"Indexer '{indexer.name}' returned {len(found)} results for '{query}'")
            items.extend(found)
        except (IndexerError, UnsafeUrlError) as e:
            current_app.logger.error(f"Indexer '{indexer.name}' search failed: {e}")
            errors.append({'indexer': indexer.name, 'error': str(e)})

    items.sort(key=lambda x: (x.get('grabs') or 0, x.get('seeders') or 0), reverse=True)
    return {'items': items, 'errors': errors}
