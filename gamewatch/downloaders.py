# /gamewatch/gamewatch/downloaders.py

"""
Download client adapters. A request is {url, title, category?, download_path?}.

Magnet links are handed to the client verbatim. Anything else is fetched
here, through the network guard, and uploaded to the client as file content,
so the download client never contacts an arbitrary URL on our behalf.
"""

# --- Standard Library Imports ---
import base64
import posixpath
import re
import urllib.parse
import xmlrpc.client
from xml.parsers.expat import ExpatError

# --- Third-Party Library Imports ---
import requests
from flask import current_app
from qbittorrentapi import Client, exceptions

# --- Local Application Imports ---
from .ssrf import ensure_safe_url, safe_get, safe_post
from .util import is_magnet

TRANSMISSION_SESSION_HEADER = 'X-Transmission-Session-Id'
DEFAULT_TAG = 'gamewatch'

# Transmission torrent status codes
TRANSMISSION_STATUS = {
    0: 'paused', 1: 'downloading', 2: 'downloading', 3: 'downloading',
    4: 'downloading', 5: 'seeding', 6: 'seeding',
}
QBIT_ERROR_STATES = {'error', 'missingFiles'}
QBIT_PAUSED_STATES = {'pausedDL', 'stoppedDL'}
QBIT_COMPLETED_STATES = {'pausedUP', 'stoppedUP'}
QBIT_SEEDING_STATES = {'uploading', 'stalledUP', 'queuedUP', 'forcedUP', 'checkingUP'}


class DownloaderError(Exception):
    pass


def magnet_hash(magnet_uri):
    match = re.search(r'xt=urn:btih:([A-Za-z0-9]+)', magnet_uri or '')
    return match.group(1).lower() if match else None


def _download(download_id, name, status, progress, error=None):
    """One entry of a client's download list, in the shape every adapter returns."""
    return {
        'id': str(download_id) if download_id is not None else None,
        'name': name,
        'status': status,  # downloading, paused, seeding, processing, completed, error
        'progress': progress,
        'error': error or None,
    }


def _filename_for(response, request, extension):
    disposition = response.headers.get('Content-Disposition', '')
    match = re.search(r'filename="?([^";]+)"?', disposition)
    if match:
        return match.group(1)
    path_name = posixpath.basename(urllib.parse.urlsplit(request['url']).path)
    if path_name.endswith(extension):
        return path_name
    title = re.sub(r'[\\/:*?"<>|]', '', request.get('title') or 'download')
    return f"{title}{extension}"


def resolve_download(request, extension='.torrent'):
    """
    Returns ('magnet', uri, None) or ('file', content, filename).

    Direct links are fetched through the guard. A redirect to a magnet URI,
    or a body that is just a magnet URI, is treated as a magnet.
    """
    url = (request.get('url') or '').strip()
    if is_magnet(url):
        return 'magnet', url, None

    response = safe_get(url, timeout=30)
    if response.is_redirect:
        location = response.headers.get('Location', '')
        if is_magnet(location):
            current_app.logger.info(f"Download link for '{request.get('title')}' redirected to a magnet link")
            return 'magnet', location, None
    if not response.ok:
        raise DownloaderError(f"Failed to fetch download file: HTTP {response.status_code}")

    content = response.content
    if content[:7].lower() == b'magnet:':
        return 'magnet', content.decode('utf-8', 'ignore').strip(), None
    return 'file', content, _filename_for(response, request, extension)


def _base_url(downloader, default_path=''):
    """Builds the client's base URL from url/port/use_ssl/url_path."""
    raw = downloader.url.strip()
    if '://' not in raw:
        raw = f"{'https' if downloader.use_ssl else 'http'}://{raw}"
    parsed = urllib.parse.urlsplit(raw)
    netloc = parsed.netloc
    if downloader.port and parsed.port is None:
        netloc = f"{netloc}:{downloader.port}"
    path = downloader.url_path or parsed.path or default_path
    if path and not path.startswith('/'):
        path = f"/{path}"
    return urllib.parse.urlunsplit((parsed.scheme, netloc, path.rstrip('/') or '', '', ''))


class TransmissionClient:

    def __init__(self, downloader):
        self.downloader = downloader
        self.rpc_url = _base_url(downloader, '/transmission/rpc')
        self.session = requests.Session()
        self.session_id = None
        if downloader.username:
            self.session.auth = (downloader.username, downloader.password or '')

    def _rpc(self, method, arguments):
        payload = {'method': method, 'arguments': arguments}
        # First call answers 409 with the session id to use
        for _ in range(2):
            headers = {TRANSMISSION_SESSION_HEADER: self.session_id} if self.session_id else {}
            response = safe_post(
                self.rpc_url, json=payload, headers=headers, session=self.session,
                allow_private=True, timeout=30,
            )
            if response.status_code == 409:
                self.session_id = response.headers.get(TRANSMISSION_SESSION_HEADER)
                continue
            if response.status_code == 401:
                raise DownloaderError("Transmission authentication failed")
            if not response.ok:
                raise DownloaderError(f"Transmission RPC error: HTTP {response.status_code}")
            data = response.json()
            if data.get('result') != 'success':
                raise DownloaderError(f"Transmission RPC error: {data.get('result')}")
            return data.get('arguments', {})
        raise DownloaderError("Transmission session negotiation failed")

    def add(self, request):
        kind, value, _ = resolve_download(request)
        arguments = {'paused': bool(self.downloader.add_stopped)}
        if kind == 'magnet':
            arguments['filename'] = value
        else:
            arguments['metainfo'] = base64.b64encode(value).decode('ascii')

        category = request.get('category') or self.downloader.category
        download_path = request.get('download_path') or self.downloader.download_path
        if category:
            arguments['labels'] = [category]
        if download_path:
            arguments['download-dir'] = posixpath.join(download_path, category) if category else download_path

        result = self._rpc('torrent-add', arguments)
        torrent = result.get('torrent-added') or result.get('torrent-duplicate') or {}
        return {
            'success': True,
            'id': torrent.get('hashString') or (magnet_hash(value) if kind == 'magnet' else None),
            'message': 'Torrent already exists' if 'torrent-duplicate' in result else 'Torrent added',
        }

    def get_downloads(self):
        result = self._rpc('torrent-get', {
            'fields': ['hashString', 'name', 'status', 'percentDone', 'error', 'errorString'],
        })
        downloads = []
        for torrent in result.get('torrents', []):
            progress = round((torrent.get('percentDone') or 0) * 100, 1)
            status = TRANSMISSION_STATUS.get(torrent.get('status'), 'downloading')
            if torrent.get('error'):
                status = 'error'
            elif status == 'paused' and progress >= 100:
                status = 'completed'
            downloads.append(_download(
                torrent.get('hashString'), torrent.get('name'), status, progress, torrent.get('errorString'),
            ))
        return downloads


class QBittorrentClient:

    def __init__(self, downloader):
        self.downloader = downloader
        self.host = ensure_safe_url(_base_url(downloader), allow_private=True)

    def _client(self):
        client = Client(
            host=self.host,
            username=self.downloader.username,
            password=self.downloader.password,
            REQUESTS_ARGS={'timeout': 30},
        )
        client.auth_log_in()
        return client

    def add(self, request):
        kind, value, filename = resolve_download(request)
        category = request.get('category') or self.downloader.category
        download_path = request.get('download_path') or self.downloader.download_path

        options = {
            'category': category,
            'savepath': download_path,
            'tags': self.downloader.label or DEFAULT_TAG,
            'is_paused': bool(self.downloader.add_stopped),
        }
        try:
            client = self._client()
            if kind == 'magnet':
                result = client.torrents_add(urls=value, **options)
            else:
                result = client.torrents_add(torrent_files={filename: value}, **options)
        except exceptions.APIError as e:
            raise DownloaderError(f"qBittorrent error: {e}") from e

        if result != 'Ok.':
            raise DownloaderError(f"qBittorrent rejected the torrent: {result}")
        return {'success': True, 'id': magnet_hash(value) if kind == 'magnet' else None, 'message': 'Torrent added'}

    def get_downloads(self):
        try:
            torrents = self._client().torrents_info()
        except exceptions.APIError as e:
            raise DownloaderError(f"qBittorrent error: {e}") from e

        downloads = []
        for torrent in torrents:
            if torrent.state in QBIT_ERROR_STATES:
                status = 'error'
            elif torrent.state in QBIT_COMPLETED_STATES:
                status = 'completed'
            elif torrent.state in QBIT_SEEDING_STATES:
                status = 'seeding'
            elif torrent.state in QBIT_PAUSED_STATES:
                status = 'paused'
            else:
                status = 'downloading'
            downloads.append(_download(torrent.hash, torrent.name, status, round(torrent.progress * 100, 1)))
        return downloads


class RTorrentClient:
    """XML-RPC client for rTorrent, usually exposed by a web server at /RPC2."""

    def __init__(self, downloader):
        self.downloader = downloader
        self.rpc_url = _base_url(downloader, '/RPC2')
        self.auth = (downloader.username, downloader.password or '') if downloader.username else None

    def _call(self, method, *params):
        body = xmlrpc.client.dumps(params, methodname=method)
        response = safe_post(
            self.rpc_url, data=body.encode('utf-8'), headers={'Content-Type': 'text/xml'},
            auth=self.auth, allow_private=True, timeout=30,
        )
        if response.status_code == 401:
            raise DownloaderError("rTorrent authentication failed")
        if not response.ok:
            raise DownloaderError(f"rTorrent XML-RPC error: HTTP {response.status_code}")
        try:
            result, _ = xmlrpc.client.loads(response.content)
        except xmlrpc.client.Fault as e:
            raise DownloaderError(f"rTorrent XML-RPC fault: {e.faultString}") from e
        except (xmlrpc.client.ResponseError, ExpatError) as e:
            raise DownloaderError(f"rTorrent returned an invalid XML-RPC response: {e}") from e
        return result[0] if result else None

    def add(self, request):
        kind, value, _ = resolve_download(request)
        commands = []
        label = request.get('category') or self.downloader.category or self.downloader.label
        download_path = request.get('download_path') or self.downloader.download_path
        if label:
            commands.append(f"d.custom1.set={label}")
        if download_path:
            commands.append(f"d.directory.set={download_path}")

        start = not self.downloader.add_stopped
        if kind == 'magnet':
            self._call('load.start' if start else 'load.normal', '', value, *commands)
        else:
            self._call('load.raw_start' if start else 'load.raw', '', xmlrpc.client.Binary(value), *commands)
        return {'success': True, 'id': magnet_hash(value) if kind == 'magnet' else None, 'message': 'Torrent added'}

    def get_downloads(self):
        rows = self._call(
            'd.multicall2', '', 'main',
            'd.hash=', 'd.name=', 'd.state=', 'd.complete=', 'd.completed_bytes=', 'd.size_bytes=', 'd.message=',
        )
        downloads = []
        for info_hash, name, state, complete, done_bytes, size_bytes, message in rows or []:
            progress = round(done_bytes / size_bytes * 100, 1) if size_bytes else 0.0
            if complete:
                status = 'seeding' if state else 'completed'
            elif state:
                status = 'downloading'
            else:
                # Stopped with a message means rTorrent gave up on it
                status = 'error' if message else 'paused'
            downloads.append(_download(info_hash, name, status, progress, message if status == 'error' else None))
        return downloads


class SABnzbdClient:

    def __init__(self, downloader):
        self.downloader = downloader
        self.api_url = f"{_base_url(downloader)}/api"

    def _api(self, params):
        response = safe_get(
            self.api_url, params={**params, 'output': 'json', 'apikey': self.downloader.api_key or ''},
            allow_private=True, timeout=30,
        )
        if not response.ok:
            raise DownloaderError(f"SABnzbd error: HTTP {response.status_code}")
        return response.json()

    def add(self, request):
        kind, value, filename = resolve_download(request, extension='.nzb')
        if kind == 'magnet':
            raise DownloaderError("SABnzbd cannot handle magnet links")

        params = {'mode': 'addfile', 'output': 'json', 'apikey': self.downloader.api_key or ''}
        category = request.get('category') or self.downloader.category
        if category:
            params['cat'] = category
        if request.get('title'):
            params['nzbname'] = request['title']

        response = safe_post(
            self.api_url, params=params, files={'name': (filename, value, 'application/x-nzb')},
            allow_private=True, timeout=30,
        )
        if not response.ok:
            raise DownloaderError(f"SABnzbd error: HTTP {response.status_code}")
        data = response.json()
        if not data.get('status'):
            raise DownloaderError(f"SABnzbd rejected the NZB: {data.get('error')}")
        nzo_ids = data.get('nzo_ids') or []
        return {'success': True, 'id': nzo_ids[0] if nzo_ids else None, 'message': 'NZB added'}

    def get_downloads(self):
        queue = self._api({'mode': 'queue'}).get('queue') or {}
        history = self._api({'mode': 'history', 'limit': 100}).get('history') or {}

        downloads = []
        for slot in queue.get('slots') or []:
            status = 'paused' if slot.get('status') == 'Paused' else 'downloading'
            downloads.append(_download(slot.get('nzo_id'), slot.get('filename'), status, float(slot.get('percentage') or 0)))
        for slot in history.get('slots') or []:
            state = slot.get('status')
            if state == 'Completed':
                status, progress = 'completed', 100.0
            elif state == 'Failed':
                status, progress = 'error', 0.0
            else:
                # Verifying, Repairing, Extracting...
                status, progress = 'processing', 100.0
            downloads.append(_download(slot.get('nzo_id'), slot.get('name'), status, progress, slot.get('fail_message')))
        return downloads


class NZBGetClient:
    """JSON-RPC client for NZBGet (`/jsonrpc`, basic auth)."""

    def __init__(self, downloader):
        self.downloader = downloader
        self.rpc_url = f"{_base_url(downloader)}/jsonrpc"
        self.auth = (downloader.username, downloader.password or '') if downloader.username else None

    def _rpc(self, method, params=None):
        response = safe_post(
            self.rpc_url, json={'method': method, 'params': params or [], 'id': 1},
            auth=self.auth, allow_private=True, timeout=30,
        )
        if response.status_code == 401:
            raise DownloaderError("NZBGet authentication failed")
        if not response.ok:
            raise DownloaderError(f"NZBGet RPC error: HTTP {response.status_code}")
        data = response.json()
        error = data.get('error')
        if error:
            raise DownloaderError(f"NZBGet RPC error: {error.get('message') if isinstance(error, dict) else error}")
        return data.get('result')

    def add(self, request):
        kind, value, filename = resolve_download(request, extension='.nzb')
        if kind == 'magnet':
            raise DownloaderError("NZBGet cannot handle magnet links")

        category = request.get('category') or self.downloader.category or ''
        # NZBFilename, Content, Category, Priority, AddToTop, AddPaused, DupeKey, DupeScore, DupeMode, PPParameters
        nzb_id = self._rpc('append', [
            filename, base64.b64encode(value).decode('ascii'), category, 0, False,
            bool(self.downloader.add_stopped), '', 0, 'SCORE', [],
        ])
        if not nzb_id or nzb_id <= 0:
            raise DownloaderError("NZBGet rejected the NZB")
        return {'success': True, 'id': str(nzb_id), 'message': 'NZB added'}

    def get_downloads(self):
        downloads = []
        for group in self._rpc('listgroups', [0]) or []:
            total = group.get('FileSizeMB') or 0
            remaining = group.get('RemainingSizeMB') or 0
            progress = round((total - remaining) / total * 100, 1) if total else 0.0
            state = group.get('Status') or ''
            if state.startswith('PP_'):
                status = 'processing'
            elif 'PAUSED' in state:
                status = 'paused'
            else:
                status = 'downloading'
            downloads.append(_download(group.get('NZBID'), group.get('NZBName'), status, progress))
        for item in self._rpc('history', [False]) or []:
            state = item.get('Status') or ''
            if state.startswith('SUCCESS'):
                status, progress = 'completed', 100.0
            elif state.startswith(('FAILURE', 'DELETED')):
                status, progress = 'error', 0.0
            else:
                status, progress = 'processing', 100.0
            downloads.append(_download(
                item.get('NZBID'), item.get('Name'), status, progress, state if status == 'error' else None,
            ))
        return downloads


DOWNLOADER_CLIENTS = {
    'transmission': TransmissionClient,
    'qbittorrent': QBittorrentClient,
    'rtorrent': RTorrentClient,
    'sabnzbd': SABnzbdClient,
    'nzbget': NZBGetClient,
}


class DownloaderManager:

    @staticmethod
    def get_client(downloader):
        client_class = DOWNLOADER_CLIENTS.get((downloader.type or '').lower())
        if client_class is None:
            raise DownloaderError(f"Unsupported downloader type: {downloader.type}")
        return client_class(downloader)

    @classmethod
    def add_download(cls, downloader, request):
        current_app.logger.info(f"Sending '{request.get('title')}' to {downloader.type} '{downloader.name}'")
        return cls.get_client(downloader).add(request)

    @classmethod
    def get_downloads(cls, downloader):
        """Lists everything the client currently knows about, normalized by `_download`."""
        return cls.get_client(downloader).get_downloads()

    @classmethod
    def add_download_with_fallback(cls, downloaders, request):
        """
        Tries enabled downloaders in priority order until one accepts the
        request. An unsafe URL aborts at once instead of falling through.
        """
        errors = []
        for downloader in sorted((d for d in downloaders if d.enabled), key=lambda d: d.priority):
            try:
                result = cls.add_download(downloader, request)
                return {**result, 'downloader': downloader.name, 'downloader_id': downloader.id, 'errors': errors}
            except (DownloaderError, requests.RequestException) as e:
                current_app.logger.warning(f"Downloader '{downloader.name}' failed: {e}")
                errors.append({'downloader': downloader.name, 'error': str(e)})

        return {
            'success': False,
            'message': 'No downloader accepted the request' if errors else 'No enabled downloaders',
            'errors': errors,
        }
