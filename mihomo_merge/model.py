"""
Clash config document model

The five fields the merge engine works with (three legacy listener ports,
proxies, proxy-groups, rules) are held as attributes. Every other top-level
key is kept as-is in `extension`, in the order it was read.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import yaml

from .errors import StructuralError

# YAML-native values: scalars, sequences, and insertion-ordered mappings
ExtensionValue = Union[str, int, float, bool, None, List[Any], Dict[str, Any]]

PORT_FIELDS = {
    'port': 'port',
    'socks-port': 'socks_port',
    'redir-port': 'redir_port',
}

LIST_FIELDS = {
    'proxies': 'proxies',
    'proxy-groups': 'proxy_groups',
    'rules': 'rules',
}


class _Dumper(yaml.SafeDumper):
    """SafeDumper that never emits anchors/aliases"""

    def ignore_aliases(self, data):
        return True


def _port(key: str, value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise StructuralError(f"'{key}' must be an integer, got {value!r}")
    if not 0 <= value <= 65535:
        raise StructuralError(f"'{key}' out of range: {value}")
    return value


def _sequence(key: str, value: Any) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        raise StructuralError(f"'{key}' must be a list, got {type(value).__name__}")
    return value


def _names(entries: List[Any]) -> List[str]:
    return [
        entry['name'] for entry in entries
        if isinstance(entry, dict) and isinstance(entry.get('name'), str)
    ]


@dataclass
class ClashConfig:
    """In-memory Clash/Mihomo config"""

    port: Optional[int] = None
    socks_port: Optional[int] = None
    redir_port: Optional[int] = None
    proxies: List[Any] = field(default_factory=list)
    proxy_groups: List[Any] = field(default_factory=list)
    rules: List[str] = field(default_factory=list)
    extension: Dict[str, ExtensionValue] = field(default_factory=dict)
    # Top-level key order as read; only used when writing the document back
    key_order: List[str] = field(default_factory=list, compare=False, repr=False)

    @classmethod
    def from_yaml(cls, text: str) -> 'ClashConfig':
        """Parse YAML text, raise StructuralError if it is not a config mapping"""
        # SafeLoader raises plain ValueError for impossible dates such as 2024-02-30
        try:
            data = yaml.safe_load(text)
        except (yaml.YAMLError, ValueError) as e:
            raise StructuralError(f"invalid YAML: {e}") from e
        if data is None:
            raise StructuralError("document is empty")
        if not isinstance(data, dict):
            raise StructuralError(f"top level must be a mapping, got {type(data).__name__}")
        return cls.from_mapping(data)

    @classmethod
    def from_mapping(cls, data: Dict[Any, Any]) -> 'ClashConfig':
        config = cls()
        for key, value in copy.deepcopy(data).items():
            if not isinstance(key, str):
                raise StructuralError(f"top-level key {key!r} is not a string")
            config.key_order.append(key)
            if key in PORT_FIELDS:
                setattr(config, PORT_FIELDS[key], _port(key, value))
            elif key in LIST_FIELDS:
                setattr(config, LIST_FIELDS[key], _sequence(key, value))
            else:
                config.extension[key] = value

        for rule in config.rules:
            if not isinstance(rule, str):
                raise StructuralError(f"rule must be a string, got {rule!r}")
        return config

    def to_mapping(self) -> Dict[str, Any]:
        """Plain dict in output order: original key order first, then new
        extension keys, then any named field not seen before"""
        named: Dict[str, Any] = {}
        for key, attr in PORT_FIELDS.items():
            value = getattr(self, attr)
            if value is not None:
                named[key] = value
        for key, attr in LIST_FIELDS.items():
            named[key] = getattr(self, attr)

        out: Dict[str, Any] = {}
        for key in self.key_order:
            if key in named:
                out[key] = named.pop(key)
            elif key in self.extension:
                out[key] = self.extension[key]
        for key, value in self.extension.items():
            if key not in out:
                out[key] = value
        out.update(named)
        return copy.deepcopy(out)

    def to_yaml(self) -> str:
        return yaml.dump(
            self.to_mapping(),
            Dumper=_Dumper,
            allow_unicode=True,
            sort_keys=False,
            default_flow_style=False,
            width=float('inf'),
        )

    def copy(self) -> 'ClashConfig':
        return copy.deepcopy(self)

    # ==================== Name lookups ====================

    def proxy_names(self) -> List[str]:
        return _names(self.proxies)

    def proxy_group_names(self) -> List[str]:
        return _names(self.proxy_groups)

    def unique_proxy_names(self) -> List[str]:
        """proxy_names() without duplicates, first occurrence wins"""
        return list(dict.fromkeys(self.proxy_names()))

    def has_target(self, name: str) -> bool:
        """True if `name` is a known proxy-group or proxy"""
        return name in self.proxy_group_names() or name in self.proxy_names()
