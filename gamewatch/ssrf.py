# /gamewatch/gamewatch/ssrf.py

"""
Network safety guard. Every fetch of a user-, feed- or indexer-supplied URL
goes through here so the app cannot be pointed at cloud metadata endpoints
or other internal targets.
"""

import ipaddress
import socket
import urllib.parse

import requests
from flask import current_app

ALLOWED_SCHEMES = {'http', 'https'}
MAX_REDIRECTS = 5
DEFAULT_TIMEOUT = 15
USER_AGENT = 'Gamewatch/1.0 (Python/Requests)'

AWS_IPV6_METADATA = ipaddress.ip_address('fd00:ec2::254')
THIS_NETWORK = ipaddress.ip_network('0.0.0.0/8')


class UnsafeUrlError(ValueError):
    """Raised when a URL resolves to a target the guard refuses to contact."""

    def __init__(self, url, reason=None):
        self.url = url
        self.reason = reason
        message = f"Unsafe URL blocked: {url}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


def _allow_private_default():
    try:
        return bool(current_app.config.get('SSRF_ALLOW_PRIVATE', True))
    except RuntimeError:
        # No app context, e.g. a bare script
        return True


def is_safe_ip(ip, allow_private=True, allow_loopback=None):
    """
    Checks a single IP address.

    Always blocked: link-local (169.254.0.0/16 incl. 169.254.169.254, fe80::/10),
    0.0.0.0/8 and '::', multicast, reserved, the AWS IPv6 metadata address.
    Loopback and private ranges are only allowed when allow_private is set;
    allow_loopback, when given, overrides that for loopback alone. Checks run
    on the unwrapped address, so ::ffff:127.0.0.1 counts as loopback.
    """
    try:
        address = ipaddress.ip_address(str(ip).strip('[]'))
    except ValueError:
        return False

    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        address = address.ipv4_mapped

    if address.is_loopback and allow_loopback is not None:
        return allow_loopback

    if address.is_link_local or address.is_multicast or address.is_unspecified:
        return False
    if address == AWS_IPV6_METADATA:
        return False
    if isinstance(address, ipaddress.IPv4Address) and address in THIS_NETWORK:
        return False

    if address.is_loopback or address.is_private:
        return allow_private
    if address.is_reserved:
        return False
    return True


def _resolve(hostname):
    infos = socket.getaddrinfo(hostname, None, proto=socket.IPPROTO_TCP)
    return {info[4][0] for info in infos}


def check_url(url, allow_private=None):
    """Returns (is_safe, reason) for a URL without fetching it."""
    if allow_private is None:
        allow_private = _allow_private_default()
        # Private LAN ranges may be allowed, loopback never is for supplied URLs
        allow_loopback = False
    else:
        allow_loopback = allow_private

    try:
        parsed = urllib.parse.urlsplit(url or '')
    except ValueError:
        return False, 'malformed URL'

    if parsed.scheme.lower() not in ALLOWED_SCHEMES:
        return False, f"scheme '{parsed.scheme}' not allowed"
    hostname = parsed.hostname
    if not hostname:
        return False, 'missing host'

    try:
        addresses = {str(ipaddress.ip_address(hostname))}
    except ValueError:
        try:
            addresses = _resolve(hostname)
        except (socket.gaierror, UnicodeError, OSError):
            return False, f"could not resolve '{hostname}'"

    if not addresses:
        return False, f"could not resolve '{hostname}'"

    for address in addresses:
        if not is_safe_ip(address, allow_private=allow_private, allow_loopback=allow_loopback):
            return False, f"{address} is not a permitted target"
    return True, None


def is_safe_url(url, allow_private=None):
    """Boolean safety predicate used before any outbound fetch."""
    safe, _ = check_url(url, allow_private=allow_private)
    return safe


def ensure_safe_url(url, allow_private=None):
    safe, reason = check_url(url, allow_private=allow_private)
    if not safe:
        raise UnsafeUrlError(url, reason)
    return url


def safe_request(method, url, allow_private=None, follow_redirects=True, **kwargs):
    """
    Performs an HTTP request after validating the target. Redirects are
    followed by hand so every hop is validated again. A redirect to a
    non-HTTP location (e.g. a magnet URI) is returned to the caller as-is.
    """
    kwargs.setdefault('timeout', DEFAULT_TIMEOUT)
    headers = dict(kwargs.pop('headers', None) or {})
    headers.setdefault('User-Agent', USER_AGENT)
    session = kwargs.pop('session', None) or requests

    current_url = url
    for _ in range(MAX_REDIRECTS + 1):
        ensure_safe_url(current_url, allow_private=allow_private)
        response = session.request(method, current_url, headers=headers, allow_redirects=False, **kwargs)

        if not follow_redirects or not response.is_redirect:
            return response

        location = response.headers.get('Location', '')
        next_url = urllib.parse.urljoin(current_url, location)
        if urllib.parse.urlsplit(next_url).scheme.lower() not in ALLOWED_SCHEMES:
            return response

        if response.status_code == 303:
            method, kwargs = 'GET', {k: v for k, v in kwargs.items() if k not in ('data', 'json', 'files')}
        current_url = next_url

    raise requests.TooManyRedirects(f"Exceeded {MAX_REDIRECTS} redirects for {url}")


def safe_get(url, **kwargs):
    return safe_request('GET', url, **kwargs)


def safe_post(url, **kwargs):
    return safe_request('POST', url, **kwargs)
