import base64
import json

import pytest

from mihomo_merge.errors import MalformedShareLink
from mihomo_merge.share_links import ShareLinkParser


def b64(text):
    return base64.b64encode(text.encode('utf-8')).decode('ascii')


def vmess_link(body):
    return 'vmess://' + b64(json.dumps(body))


# ==================== trojan ====================

def test_trojan_basic():
    proxy = ShareLinkParser.parse_trojan(
        'trojan://pw@host.example:443?sni=foo.example&allowInsecure=1#Tag'
    )
    assert proxy == {
        'name': 'Tag',
        'type': 'trojan',
        'server': 'host.example',
        'port': 443,
        'password': 'pw',
        'udp': True,
        'sni': 'foo.example',
        'skip-cert-verify': True,
    }


def test_trojan_defaults():
    proxy = ShareLinkParser.parse_trojan('trojan://p%40ss@host.example')
    assert proxy['port'] == 443
    assert proxy['password'] == 'p@ss'
    assert proxy['name'] == 'host.example:443'
    assert 'sni' not in proxy
    assert 'skip-cert-verify' not in proxy


def test_trojan_peer_alpn_and_websocket():
    proxy = ShareLinkParser.parse_trojan(
        'trojan://pw@h.example:8443?peer=p.example&alpn=h2,http/1.1'
        '&type=ws&path=%2Fws&host=cdn.example&allowInsecure=true#%E9%A6%99%E6%B8%AF'
    )
    assert proxy['name'] == '香港'
    assert proxy['sni'] == 'p.example'
    assert proxy['alpn'] == ['h2', 'http/1.1']
    assert proxy['skip-cert-verify'] is True
    assert proxy['network'] == 'ws'
    assert proxy['ws-opts'] == {'path': '/ws', 'headers': {'Host': 'cdn.example'}}


def test_trojan_host_keeps_case():
    proxy = ShareLinkParser.parse_trojan('trojan://pw@Host.Example:443')
    assert proxy['server'] == 'Host.Example'
    assert proxy['name'] == 'Host.Example:443'


def test_trojan_ipv6_host():
    proxy = ShareLinkParser.parse_trojan('trojan://pw@[2001:DB8::1]:8443#V6')
    assert proxy['server'] == '2001:DB8::1'
    assert proxy['port'] == 8443


def test_trojan_websocket_host_header_fallback():
    proxy = ShareLinkParser.parse_trojan('trojan://pw@h.example:443?type=ws&hostHeader=cdn.example')
    assert proxy['ws-opts'] == {'headers': {'Host': 'cdn.example'}}


@pytest.mark.parametrize('line', [
    'trojan://pw@:443',
    'trojan://pw@h.example:99999',
    'trojan://pw@h.example:abc',
])
def test_trojan_malformed(line):
    with pytest.raises(MalformedShareLink) as info:
        ShareLinkParser.parse_trojan(line)
    assert info.value.family == 'trojan'


# ==================== vmess ====================

def test_vmess_full():
    proxy = ShareLinkParser.parse_vmess(vmess_link({
        'v': '2', 'ps': 'JP 01', 'add': 'jp.example', 'port': '443', 'id': 'uuid-1',
        'aid': '0', 'scy': 'auto', 'net': 'ws', 'path': '/ray', 'host': 'cdn.example',
        'tls': 'tls', 'sni': 'sni.example', 'fp': 'chrome', 'alpn': 'h2',
    }))
    assert proxy == {
        'name': 'JP 01',
        'type': 'vmess',
        'server': 'jp.example',
        'port': 443,
        'uuid': 'uuid-1',
        'udp': True,
        'alterId': 0,
        'cipher': 'auto',
        'network': 'ws',
        'ws-opts': {'path': '/ray', 'headers': {'Host': 'cdn.example'}},
        'tls': True,
        'servername': 'sni.example',
        'client-fingerprint': 'chrome',
        'alpn': ['h2'],
    }


def test_vmess_minimal_uses_server_as_name():
    proxy = ShareLinkParser.parse_vmess(vmess_link({'add': 'a.example', 'port': 10086, 'id': 'u'}))
    assert proxy['name'] == 'a.example'
    assert proxy['port'] == 10086
    assert 'cipher' not in proxy
    assert 'tls' not in proxy


BASE_VMESS = {'add': 'a.example', 'port': 443, 'id': 'u'}


@pytest.mark.parametrize('extra, key, expected', [
    ({'allowInsecure': True}, 'skip-cert-verify', True),
    ({'allowInsecure': '1'}, 'skip-cert-verify', True),
    ({'cipher': 'aes-128-gcm'}, 'cipher', 'aes-128-gcm'),
    ({'scy': 'none', 'cipher': 'aes-128-gcm'}, 'cipher', 'none'),
    ({'aid': 64}, 'alterId', 64),
    ({'aid': '2'}, 'alterId', 2),
    ({'tls': '1'}, 'tls', True),
    ({'tls': 'TLS'}, 'tls', True),
])
def test_vmess_optional_fields(extra, key, expected):
    proxy = ShareLinkParser.parse_vmess(vmess_link({**BASE_VMESS, **extra}))
    assert proxy[key] == expected


@pytest.mark.parametrize('extra, key', [
    ({'allowInsecure': False}, 'skip-cert-verify'),
    ({'allowInsecure': '0'}, 'skip-cert-verify'),
    ({'aid': -1}, 'alterId'),
    ({'aid': 'x'}, 'alterId'),
    ({'tls': ''}, 'tls'),
    ({'scy': ''}, 'cipher'),
])
def test_vmess_optional_fields_absent(extra, key):
    proxy = ShareLinkParser.parse_vmess(vmess_link({**BASE_VMESS, **extra}))
    assert key not in proxy


@pytest.mark.parametrize('link', [
    vmess_link({**BASE_VMESS, 'port': 65536}),
    vmess_link({**BASE_VMESS, 'port': '65536'}),
    vmess_link({**BASE_VMESS, 'port': -1}),
    vmess_link({**BASE_VMESS, 'port': True}),
    'vmess://!!!not-base64!!!',
    'vmess://' + b64('not json'),
    'vmess://' + b64('[1, 2]'),
    vmess_link({'port': 1, 'id': 'u'}),
    vmess_link({'add': 'a', 'id': 'u'}),
    vmess_link({'add': 'a', 'port': 1}),
    vmess_link({'add': 'a', 'port': 'x1', 'id': 'u'}),
])
def test_vmess_malformed(link):
    with pytest.raises(MalformedShareLink) as info:
        ShareLinkParser.parse_vmess(link)
    assert info.value.family == 'vmess'


# ==================== ss ====================

def test_ss_base64_body():
    proxy = ShareLinkParser.parse_ss('ss://' + b64('aes-256-gcm:secret@ss.example:8388') + '#Node')
    assert proxy == {
        'name': 'Node',
        'type': 'ss',
        'server': 'ss.example',
        'port': 8388,
        'cipher': 'aes-256-gcm',
        'password': 'secret',
        'udp': True,
    }


def test_ss_plain_with_plugin():
    proxy = ShareLinkParser.parse_ss(
        'ss://aes-128-gcm:pw@1.2.3.4:8388?plugin=obfs-local%3Bobfs%3Dhttp&group=x#My%20Node'
    )
    assert proxy['name'] == 'My Node'
    assert proxy['cipher'] == 'aes-128-gcm'
    assert proxy['password'] == 'pw'
    assert proxy['server'] == '1.2.3.4'
    assert proxy['plugin'] == 'obfs-local%3Bobfs%3Dhttp&group=x'


def test_ss_plugin_keeps_ampersand_options():
    proxy = ShareLinkParser.parse_ss('ss://aes-128-gcm:pw@1.2.3.4:8388?plugin=obfs-local;obfs=http&udp=1#N')
    assert proxy['plugin'] == 'obfs-local;obfs=http&udp=1'
    assert proxy['name'] == 'N'


def test_ss_sip002_user_info():
    proxy = ShareLinkParser.parse_ss('ss://' + b64('chacha20-ietf-poly1305:p:w') + '@h.example:443')
    assert proxy['cipher'] == 'chacha20-ietf-poly1305'
    assert proxy['password'] == 'p:w'
    assert proxy['name'] == 'h.example:443'


@pytest.mark.parametrize('line', [
    'ss://aes-256-gcm:secret@host.example',
    'ss://' + b64('aes-256-gcm:secret@host.example:port'),
    'ss://' + b64('no-at-sign'),
    'ss://%%%',
    'ss://nocolon@host.example:1',
])
def test_ss_malformed(line):
    with pytest.raises(MalformedShareLink) as info:
        ShareLinkParser.parse_ss(line)
    assert info.value.family == 'ss'


# ==================== Dispatch ====================

def test_parse_lines_skips_unknown_schemes():
    text = '\n'.join([
        'vless://uuid@v.example:443#V',
        '  trojan://pw@t.example:443#T  ',
        '',
        'ss://' + b64('aes-256-gcm:s@s.example:1') + '#S',
        '# comment',
    ])
    proxies = ShareLinkParser.parse_lines(text)
    assert [p['name'] for p in proxies] == ['T', 'S']


def test_parse_line_unknown_scheme():
    assert ShareLinkParser.parse_line('hysteria2://x@y:1') is None


def test_parse_lines_stops_on_malformed_line():
    with pytest.raises(MalformedShareLink):
        ShareLinkParser.parse_lines('trojan://pw@a.example#A\ntrojan://pw@:1#B\n')
