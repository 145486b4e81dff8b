"""
In-place adjustments applied to the final config: external controller,
fake-ip filters and tun route excludes
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .model import ClashConfig

logger = logging.getLogger(__name__)

DEFAULT_CONTROLLER_HOST = '127.0.0.1'
DEFAULT_CONTROLLER_PORT = 9090

# In-cluster names that must never get a fake-ip answer
CLUSTER_DNS_BYPASS = ['+.cluster.local', '*.cluster.local.*']

# Default k3s pod/service CIDRs
DEFAULT_ROUTE_EXCLUDES = ['10.42.0.0/16', '10.43.0.0/16']

FAKE_IP_FILTER_MODES = ('blacklist', 'whitelist')

_BRACKETED = re.compile(r'\[([^\]]*)\]:(\d+)')


def parse_host_port(value: str) -> Optional[Tuple[str, int]]:
    """Split 'host:port' or '[v6]:port', None if there is no valid port"""
    if ']' in value:
        match = _BRACKETED.fullmatch(value)
        if not match:
            return None
        host, port = match.group(1), match.group(2)
    elif ':' in value:
        host, port = value.rsplit(':', 1)
    else:
        return None
    if not port.isdigit() or int(port) > 65535:
        return None
    return host, int(port)


def _mapping(config: ClashConfig, key: str) -> Dict[str, Any]:
    value = config.extension.get(key)
    if not isinstance(value, dict):
        value = config.extension[key] = {}
    return value


def _sequence(mapping: Dict[str, Any], key: str) -> List[Any]:
    value = mapping.get(key)
    if not isinstance(value, list):
        value = mapping[key] = []
    return value


def apply_external_controller(
    config: ClashConfig,
    host: Optional[str] = None,
    port: Optional[int] = None,
    secret: Optional[str] = None,
):
    """Rewrite external-controller, keeping whichever part was not given"""
    existing_host, existing_port = None, None
    current = config.extension.get('external-controller')
    if isinstance(current, str):
        parsed = parse_host_port(current)
        if parsed:
            existing_host, existing_port = parsed

    host = host or existing_host or DEFAULT_CONTROLLER_HOST
    port = port or existing_port or DEFAULT_CONTROLLER_PORT
    config.extension['external-controller'] = f"{host}:{port}"
    if secret is not None:
        config.extension['secret'] = secret


def apply_fake_ip_bypass(config: ClashConfig, patterns: Iterable[str]):
    """Append patterns to dns.fake-ip-filter and switch to blacklist mode"""
    patterns = list(patterns)
    if not patterns:
        return
    dns = _mapping(config, 'dns')
    _sequence(dns, 'fake-ip-filter').extend(patterns)

    current = dns.get('fake-ip-filter-mode')
    if not (isinstance(current, str) and current.lower() == 'blacklist'):
        if current is not None:
            logger.warning("overriding fake-ip-filter-mode %r to 'blacklist' for fake-ip bypass", current)
        dns['fake-ip-filter-mode'] = 'blacklist'


def apply_fake_ip_filter_mode(config: ClashConfig, mode: str, bypass_used: bool = False):
    mode = mode.lower()
    if mode not in FAKE_IP_FILTER_MODES:
        logger.warning("invalid fake-ip-filter-mode %r (expected 'blacklist' or 'whitelist')", mode)
        return
    if mode == 'whitelist' and bypass_used:
        logger.warning("fake-ip bypass works with blacklist mode; keeping 'blacklist' instead of 'whitelist'")
        return
    _mapping(config, 'dns')['fake-ip-filter-mode'] = mode


def ensure_cluster_dns_bypass(config: ClashConfig):
    """Keep *.cluster.local out of fake-ip when fake-ip mode is on"""
    dns = config.extension.get('dns')
    if not isinstance(dns, dict):
        return
    enhanced = dns.get('enhanced-mode')
    if not (isinstance(enhanced, str) and enhanced.lower() == 'fake-ip'):
        return
    mode = dns.get('fake-ip-filter-mode')
    if isinstance(mode, str) and mode.lower() == 'whitelist':
        return

    filters = _sequence(dns, 'fake-ip-filter')
    for pattern in CLUSTER_DNS_BYPASS:
        if pattern not in filters:
            filters.append(pattern)
            logger.info("auto-added fake-ip bypass %s", pattern)


def ensure_route_excludes(config: ClashConfig, extra_cidrs: Iterable[str] = ()):
    """Add pod/service CIDRs to tun.route-exclude-address"""
    excludes = _sequence(_mapping(config, 'tun'), 'route-exclude-address')
    for cidr in DEFAULT_ROUTE_EXCLUDES + list(extra_cidrs):
        if '/' not in cidr:
            logger.warning("invalid CIDR %r for route exclude (expected like 10.42.0.0/16)", cidr)
            continue
        if cidr not in excludes:
            excludes.append(cidr)
            logger.info("auto-added tun route-exclude-address %s", cidr)
