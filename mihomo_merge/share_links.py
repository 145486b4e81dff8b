"""
Share-link decoders

Turns single-line proxy URIs (trojan://, vmess://, ss://) into Clash proxy
mappings. Lines with any other scheme are ignored so mixed payloads still
parse; a recognized line with a missing required field raises
MalformedShareLink.
"""

import base64
import binascii
import json
import re
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qsl, unquote, urlsplit

from .errors import MalformedShareLink

# Ports used when a URI leaves the port out
DEFAULT_PORTS = {
    'trojan': 443,
}

_DIGITS = re.compile(r'\d+', re.ASCII)


def pad_base64(text: str) -> str:
    """Right-pad with '=' to a multiple of 4"""
    text = text.strip()
    return text + '=' * (-len(text) % 4)


def decode_base64_text(text: str) -> Optional[str]:
    """Decode base64 (padding optional, URL-safe chars accepted) into UTF-8
    text, None on failure"""
    text = text.replace('-', '+').replace('_', '/')
    try:
        return base64.b64decode(pad_base64(text), validate=True).decode('utf-8')
    except (binascii.Error, UnicodeDecodeError):
        return None


def _split_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(',') if item.strip()]


def _ws_opts(path: Optional[str], host: Optional[str]) -> Dict[str, Any]:
    opts: Dict[str, Any] = {}
    if path:
        opts['path'] = path
    if host:
        opts['headers'] = {'Host': host}
    return opts


def _netloc_host(netloc: str) -> str:
    """Host part of a netloc, case kept as written (urlsplit lowercases it)"""
    hostport = netloc.rsplit('@', 1)[-1]
    if hostport.startswith('['):
        return hostport[1:].split(']', 1)[0]
    return hostport.rsplit(':', 1)[0] if ':' in hostport else hostport


def _parse_port(family: str, value: Any) -> int:
    if isinstance(value, str) and _DIGITS.fullmatch(value):
        value = int(value)
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedShareLink(family, f"invalid port {value!r}")
    if not 0 <= value <= 65535:
        raise MalformedShareLink(family, f"port out of range: {value}")
    return value


class ShareLinkParser:
    """Parse share-link lines into Clash proxy dicts"""

    @staticmethod
    def parse_trojan(line: str) -> dict:
        """Parse trojan:// link"""
        # trojan://password@host:port?sni=...&type=ws&path=...#remark
        parts = urlsplit(line)
        server = _netloc_host(parts.netloc)
        if not server:
            raise MalformedShareLink('trojan', "missing host")
        try:
            port = parts.port
        except ValueError as e:
            raise MalformedShareLink('trojan', str(e)) from e
        if port is None:
            port = DEFAULT_PORTS['trojan']

        password = unquote(parts.username or '')
        name = unquote(parts.fragment) if parts.fragment else f"{server}:{port}"

        proxy = {
            'name': name,
            'type': 'trojan',
            'server': server,
            'port': port,
            'password': password,
            'udp': True,
        }

        params = dict(parse_qsl(parts.query, keep_blank_values=True))

        if 'sni' in params:
            proxy['sni'] = params['sni']
        elif 'peer' in params:
            proxy['sni'] = params['peer']

        alpn = _split_list(params.get('alpn', ''))
        if alpn:
            proxy['alpn'] = alpn

        insecure = params.get('allowInsecure', '')
        if insecure == '1' or insecure.lower() == 'true':
            proxy['skip-cert-verify'] = True

        transport = params.get('type', '').strip()
        if transport:
            proxy['network'] = transport
            if transport.lower() == 'ws':
                host = params['host'] if 'host' in params else params.get('hostHeader')
                ws_opts = _ws_opts(params.get('path'), host)
                if ws_opts:
                    proxy['ws-opts'] = ws_opts

        return proxy

    @staticmethod
    def parse_vmess(line: str) -> dict:
        """Parse vmess:// link (base64 JSON body)"""
        body = line[len('vmess://'):]
        try:
            raw = base64.b64decode(pad_base64(body), validate=True)
        except binascii.Error as e:
            raise MalformedShareLink('vmess', f"body is not base64: {e}") from e
        try:
            v = json.loads(raw.decode('utf-8'))
        except UnicodeDecodeError as e:
            raise MalformedShareLink('vmess', "body is not UTF-8") from e
        except ValueError as e:
            raise MalformedShareLink('vmess', f"body is not JSON: {e}") from e
        if not isinstance(v, dict):
            raise MalformedShareLink('vmess', "body is not a JSON object")

        server = v.get('add')
        if not isinstance(server, str):
            raise MalformedShareLink('vmess', "missing server")
        if 'port' not in v:
            raise MalformedShareLink('vmess', "missing port")
        port = _parse_port('vmess', v['port'])
        uuid = v.get('id')
        if not isinstance(uuid, str):
            raise MalformedShareLink('vmess', "missing uuid")

        ps = v.get('ps')
        proxy = {
            'name': ps if isinstance(ps, str) else server,
            'type': 'vmess',
            'server': server,
            'port': port,
            'uuid': uuid,
            'udp': True,
        }

        aid = v.get('aid')
        if isinstance(aid, str) and _DIGITS.fullmatch(aid):
            proxy['alterId'] = int(aid)
        elif isinstance(aid, int) and not isinstance(aid, bool) and aid >= 0:
            proxy['alterId'] = aid

        cipher = v['scy'] if 'scy' in v else v.get('cipher')
        if isinstance(cipher, str) and cipher:
            proxy['cipher'] = cipher

        net = v.get('net')
        if isinstance(net, str) and net:
            proxy['network'] = net
            if net.lower() == 'ws':
                path = v.get('path')
                host = v.get('host')
                ws_opts = _ws_opts(
                    path if isinstance(path, str) else None,
                    host if isinstance(host, str) else None,
                )
                if ws_opts:
                    proxy['ws-opts'] = ws_opts

        tls = v.get('tls')
        if isinstance(tls, str) and (tls.lower() == 'tls' or tls == '1'):
            proxy['tls'] = True

        sni = v.get('sni')
        if isinstance(sni, str) and sni:
            proxy['servername'] = sni

        fp = v.get('fp')
        if isinstance(fp, str) and fp:
            proxy['client-fingerprint'] = fp

        alpn = v.get('alpn')
        if isinstance(alpn, str) and _split_list(alpn):
            proxy['alpn'] = _split_list(alpn)

        if v.get('allowInsecure') is True or v.get('allowInsecure') == '1':
            proxy['skip-cert-verify'] = True

        return proxy

    @staticmethod
    def parse_ss(line: str) -> dict:
        """Parse ss:// link"""
        # ss://method:password@host:port?plugin=...#remark
        # OR ss://base64(method:password@host:port)#remark
        # OR ss://base64(method:password)@host:port#remark (SIP002)
        main = line[len('ss://'):]
        tag = None
        if '#' in main:
            main, tag = main.split('#', 1)

        plugin = None
        if '?' in main:
            main, query = main.split('?', 1)
            if 'plugin=' in query:
                # everything after plugin= is the plugin value, '&' included
                plugin = query.split('plugin=', 1)[1]

        if '@' in main:
            credentials = main
        else:
            credentials = decode_base64_text(main)
            if credentials is None:
                raise MalformedShareLink('ss', "body is not base64 text")

        if '@' not in credentials:
            raise MalformedShareLink('ss', "missing host")
        user_info, address = credentials.rsplit('@', 1)
        if ':' not in user_info:
            decoded = decode_base64_text(user_info)
            if decoded is not None and ':' in decoded:
                user_info = decoded
        if ':' not in user_info:
            raise MalformedShareLink('ss', "missing cipher or password")
        cipher, password = user_info.split(':', 1)

        if ':' not in address:
            raise MalformedShareLink('ss', "missing port")
        server, port = address.split(':', 1)
        port = _parse_port('ss', port)

        proxy = {
            'name': unquote(tag, errors='replace') if tag else f"{server}:{port}",
            'type': 'ss',
            'server': server,
            'port': port,
            'cipher': cipher,
            'password': password,
            'udp': True,
        }
        if plugin is not None:
            proxy['plugin'] = plugin
        return proxy

    # ==================== Dispatch ====================

    SCHEMES: Dict[str, Callable[[str], dict]] = {}

    @classmethod
    def parse_line(cls, line: str) -> Optional[dict]:
        """Decode one trimmed line, None when the scheme is not supported"""
        for prefix, parser in cls.SCHEMES.items():
            if line.startswith(prefix):
                return parser(line)
        return None

    @classmethod
    def parse_lines(cls, text: str) -> List[dict]:
        """Decode every supported line of a payload, in order"""
        proxies = []
        for line in text.splitlines():
            line = line.strip()
            if not line:
                continue
            proxy = cls.parse_line(line)
            if proxy is not None:
                proxies.append(proxy)
        return proxies


ShareLinkParser.SCHEMES = {
    'trojan://': ShareLinkParser.parse_trojan,
    'vmess://': ShareLinkParser.parse_vmess,
    'ss://': ShareLinkParser.parse_ss,
}
