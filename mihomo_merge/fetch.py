"""
Subscription fetching with an on-disk cache, plus geo resource downloads

Remote payloads are cached per subscription together with their ETag and
Last-Modified headers, so later fetches can be conditional and a network
failure can fall back to the last good copy.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import requests

from .errors import FetchError
from .interpreter import ParseOptions, interpret
from .model import ClashConfig
from .storage import AppPaths, Subscription

logger = logging.getLogger(__name__)

# Some providers only return Clash YAML (with rules) to known clients
DEFAULT_USER_AGENT = 'clash-verge/v2.4.2'
FETCH_TIMEOUT = 30


@dataclass
class FetchResult:
    text: str
    etag: Optional[str] = None
    last_modified: Optional[str] = None


def make_session(user_agent: Optional[str] = None) -> requests.Session:
    session = requests.Session()
    session.headers.update({'User-Agent': user_agent or DEFAULT_USER_AGENT, 'Accept': '*/*'})
    return session


def _read_cache(path: Path) -> Optional[str]:
    if not path.exists():
        return None
    return path.read_text(encoding='utf-8')


def _read_meta(path: Path) -> dict:
    if not path.exists():
        return {}
    try:
        with open(path, 'r', encoding='utf-8') as f:
            meta = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("ignoring unreadable cache metadata %s: %s", path, e)
        return {}
    return meta if isinstance(meta, dict) else {}


def _write_cache(paths: AppPaths, sub_id: str, text: str, etag: Optional[str], last_modified: Optional[str]):
    paths.cache_dir.mkdir(parents=True, exist_ok=True)
    paths.cache_file(sub_id).write_text(text, encoding='utf-8')
    with open(paths.cache_meta_file(sub_id), 'w', encoding='utf-8') as f:
        json.dump({'etag': etag, 'last_modified': last_modified}, f)


def fetch_remote(
    session: requests.Session,
    paths: AppPaths,
    sub_id: str,
    url: str,
    etag: Optional[str] = None,
    last_modified: Optional[str] = None,
) -> FetchResult:
    """GET a subscription, honouring and refreshing the cache"""
    cache_file = paths.cache_file(sub_id)
    meta = _read_meta(paths.cache_meta_file(sub_id))
    cached_etag = meta.get('etag')
    cached_last_modified = meta.get('last_modified')

    headers = {}
    if etag or cached_etag:
        headers['If-None-Match'] = etag or cached_etag
    if last_modified or cached_last_modified:
        headers['If-Modified-Since'] = last_modified or cached_last_modified

    def from_cache(reason: str) -> FetchResult:
        cached = _read_cache(cache_file)
        if cached is None:
            raise FetchError(f"failed to fetch subscription {sub_id}: {reason}")
        logger.warning("%s for subscription %s, using cached copy", reason, sub_id)
        return FetchResult(cached, cached_etag, cached_last_modified)

    try:
        response = session.get(url, headers=headers, timeout=FETCH_TIMEOUT)
    except requests.RequestException as e:
        return from_cache(f"network error ({e})")

    if response.status_code == 304:
        cached = _read_cache(cache_file)
        if cached is None:
            raise FetchError(f"remote responded 304 but cache missing for {sub_id}")
        return FetchResult(cached, cached_etag, cached_last_modified)

    if not response.ok:
        return from_cache(f"unexpected status {response.status_code}")

    # Providers rarely declare a charset; requests would fall back to latin-1
    text = response.content.decode('utf-8', errors='replace')
    new_etag = response.headers.get('ETag')
    new_last_modified = response.headers.get('Last-Modified')
    _write_cache(paths, sub_id, text, new_etag, new_last_modified)
    return FetchResult(text, new_etag or cached_etag, new_last_modified or cached_last_modified)


def load_subscription(
    sub: Subscription,
    session: requests.Session,
    paths: AppPaths,
    options: ParseOptions,
) -> Optional[ClashConfig]:
    """Fetch or read one subscription and decode it; None when disabled.

    Updates the record's cache validators and timestamp.
    """
    if not sub.enabled:
        return None
    sub.ensure_id()

    if sub.url:
        logger.info("fetching subscription %s from %s", sub.id, sub.url)
        result = fetch_remote(session, paths, sub.id, sub.url, sub.etag, sub.last_modified)
        if result.etag:
            sub.etag = result.etag
        if result.last_modified:
            sub.last_modified = result.last_modified
        sub.touch()
        return interpret(result.text, options)

    if sub.path:
        logger.info("reading subscription %s from %s", sub.id, sub.path)
        try:
            text = Path(sub.path).expanduser().read_text(encoding='utf-8')
        except OSError as e:
            raise FetchError(f"failed to read subscription file {sub.path}: {e}") from e
        sub.touch()
        return interpret(text, options)

    raise FetchError(f"subscription {sub.id} missing url or path")


def is_url(value: str) -> bool:
    return value.startswith('http://') or value.startswith('https://')


def subscription_from_input(index: int, value: str) -> Subscription:
    """Ad-hoc subscription record for a URL or file path given on the command line"""
    sub = Subscription(name=f"cli-{index}")
    if is_url(value):
        sub.url = value
        host = value.split('//', 1)[1].split('/', 1)[0]
        if host:
            sub.name = host
    else:
        sub.path = value
        sub.name = Path(value).stem or sub.name
    sub.ensure_id()
    return sub


RESOURCE_SOURCES = (
    ('Country.mmdb', 'https://github.com/MetaCubeX/meta-rules-dat/releases/download/latest/country.mmdb'),
    ('geoip.dat', 'https://github.com/MetaCubeX/meta-rules-dat/releases/download/latest/geoip.dat'),
    ('geosite.dat', 'https://github.com/MetaCubeX/meta-rules-dat/releases/download/latest/geosite.dat'),
)


def ensure_resources(session: requests.Session, paths: AppPaths):
    """Download the GeoIP/GeoSite databases mihomo needs, skipping ones already present"""
    for name, url in RESOURCE_SOURCES:
        target = paths.resource_file(name)
        if target.exists():
            continue
        logger.info("downloading %s from %s", name, url)
        try:
            response = session.get(url, timeout=FETCH_TIMEOUT)
        except requests.RequestException as e:
            raise FetchError(f"failed to download {name} from {url}: {e}") from e
        if not response.ok:
            raise FetchError(f"failed to download {name} from {url}: status {response.status_code}")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(response.content)
