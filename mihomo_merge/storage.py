"""
On-disk state: directory layout, app settings, subscription list and the
bundled default template
"""

import hashlib
import json
import logging
import os
import time
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import List, Optional

from .rules import CustomRule

logger = logging.getLogger(__name__)

HOME_ENV = 'MIHOMO_MERGE_HOME'

DEFAULT_TEMPLATE = r"""mixed-port: 7890
allow-lan: false
mode: rule
log-level: info
external-controller: 127.0.0.1:9090
unified-delay: true
tcp-concurrent: true
profile:
  store-selected: true
  store-fake-ip: true
dns:
  enable: true
  ipv6: false
  enhanced-mode: fake-ip
  fake-ip-range: 198.18.0.1/16
  fake-ip-filter:
    - "+.lan"
    - "+.local"
  default-nameserver:
    - 223.5.5.5
    - 119.29.29.29
  nameserver:
    - https://doh.pub/dns-query
    - https://dns.alidns.com/dns-query
tun:
  enable: false
  stack: system
  auto-route: true
  auto-detect-interface: true
  dns-hijack:
    - any:53
proxies: []
proxy-groups:
  - name: "🚀 节点选择"
    type: select
    proxies: []
  - name: Proxy
    type: select
    proxies:
      - "🚀 节点选择"
      - DIRECT
rules:
  - GEOSITE,private,DIRECT
  - GEOIP,private,DIRECT,no-resolve
  - GEOSITE,cn,DIRECT
  - GEOIP,CN,DIRECT
  - MATCH,🚀 节点选择
"""


# ==================== Paths ====================

class AppPaths:
    """Config and cache locations, rooted at $MIHOMO_MERGE_HOME if set"""

    def __init__(self, config_dir: Path, cache_dir: Path):
        self.config_dir = Path(config_dir)
        self.cache_dir = Path(cache_dir)

    @classmethod
    def from_env(cls) -> 'AppPaths':
        home = os.environ.get(HOME_ENV)
        if home:
            root = Path(home).expanduser()
            return cls(root, root / 'cache')
        user_home = Path.home()
        return cls(user_home / '.config' / 'mihomo-merge', user_home / '.cache' / 'mihomo-merge' / 'subscriptions')

    @property
    def templates_dir(self) -> Path:
        return self.config_dir / 'templates'

    @property
    def default_template_path(self) -> Path:
        return self.templates_dir / 'default.yaml'

    @property
    def base_config_path(self) -> Path:
        return self.config_dir / 'base-config.yaml'

    @property
    def app_config_path(self) -> Path:
        return self.config_dir / 'app.json'

    @property
    def subscriptions_file(self) -> Path:
        return self.config_dir / 'subscriptions.json'

    @property
    def output_config_path(self) -> Path:
        return self.config_dir / 'output' / 'config.yaml'

    @property
    def resources_dir(self) -> Path:
        return self.config_dir / 'resources'

    def resource_file(self, name: str) -> Path:
        return self.resources_dir / name

    def cache_file(self, sub_id: str) -> Path:
        return self.cache_dir / f"{cache_key(sub_id)}.yaml"

    def cache_meta_file(self, sub_id: str) -> Path:
        return self.cache_dir / f"{cache_key(sub_id)}.meta.json"

    def resolve_template(self, provided: Path) -> Path:
        """Relative template paths are looked up under templates/ first"""
        return self._resolve_under(self.templates_dir, provided)

    def resolve_base_config(self, provided: Path) -> Path:
        return self._resolve_under(self.config_dir, provided)

    @staticmethod
    def _resolve_under(root: Path, provided: Path) -> Path:
        provided = Path(provided).expanduser()
        if provided.is_absolute():
            return provided
        candidate = root / provided
        return candidate if candidate.exists() else provided

    def ensure_runtime_dirs(self):
        for directory in (self.config_dir, self.templates_dir, self.output_config_path.parent, self.cache_dir):
            directory.mkdir(parents=True, exist_ok=True)


def cache_key(sub_id: str) -> str:
    """File-system safe name for a subscription id (ids may be URLs)"""
    return hashlib.sha256(sub_id.encode('utf-8')).hexdigest()[:16]


def ensure_default_template(paths: AppPaths) -> Path:
    target = paths.default_template_path
    if not target.exists():
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(DEFAULT_TEMPLATE, encoding='utf-8')
        logger.info("installed default template at %s", target)
    return target


def _read_json(path: Path) -> Optional[dict]:
    if not path.exists():
        return None
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)


def _write_json(path: Path, data: dict):
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(data, f, ensure_ascii=False, indent=2)


# ==================== App config ====================

@dataclass
class AppConfig:
    last_subscription_url: Optional[str] = None
    custom_rules: List[CustomRule] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> 'AppConfig':
        return cls(
            last_subscription_url=data.get('last_subscription_url'),
            custom_rules=[CustomRule(**r) for r in data.get('custom_rules', [])],
        )

    def to_dict(self) -> dict:
        return {
            'last_subscription_url': self.last_subscription_url,
            'custom_rules': [r.to_dict() for r in self.custom_rules],
        }


def load_app_config(paths: AppPaths) -> AppConfig:
    data = _read_json(paths.app_config_path)
    if data is None:
        config = AppConfig()
        save_app_config(paths, config)
        return config
    return AppConfig.from_dict(data)


def save_app_config(paths: AppPaths, config: AppConfig):
    _write_json(paths.app_config_path, config.to_dict())


# ==================== Subscriptions ====================

@dataclass
class Subscription:
    id: str = ''
    name: str = ''
    url: Optional[str] = None
    path: Optional[str] = None
    enabled: bool = True
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    last_updated: Optional[int] = None

    def ensure_id(self):
        if not self.id:
            self.id = self.url or self.path or uuid.uuid4().hex

    def touch(self):
        self.last_updated = int(time.time())

    @classmethod
    def from_dict(cls, data: dict) -> 'Subscription':
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        sub = cls(**known)
        sub.ensure_id()
        return sub

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SubscriptionList:
    items: List[Subscription] = field(default_factory=list)

    def enabled(self) -> List[Subscription]:
        return [s for s in self.items if s.enabled]

    def get(self, sub_id: str) -> Optional[Subscription]:
        return next((s for s in self.items if s.id == sub_id), None)


def load_subscription_list(path: Path) -> SubscriptionList:
    data = _read_json(Path(path))
    if data is None:
        return SubscriptionList()
    return SubscriptionList(items=[Subscription.from_dict(d) for d in data.get('items', [])])


def save_subscription_list(path: Path, subs: SubscriptionList):
    _write_json(Path(path), {'items': [s.to_dict() for s in subs.items]})
