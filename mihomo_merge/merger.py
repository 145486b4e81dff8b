"""
Merge engine

Folds subscription documents into a template, then optionally overlays a
base-config. Inputs are never modified; every call works on its own deep
copy.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional

from .model import ClashConfig

logger = logging.getLogger(__name__)

# Selector group whose members are always "every known proxy"
DEFAULT_SELECTOR_NAME = '🚀 节点选择'


@dataclass
class MergeResult:
    config: ClashConfig
    proxy_names: List[str] = field(default_factory=list)


def _group_name(group: Any) -> Optional[str]:
    if isinstance(group, dict) and isinstance(group.get('name'), str):
        return group['name']
    return None


def _collect_names(configs: Iterable[ClashConfig]) -> List[str]:
    names: List[str] = []
    for config in configs:
        names.extend(config.proxy_names())
    return list(dict.fromkeys(names))


def _fold_group(existing: dict, incoming: dict):
    """Union incoming member names into an existing group, keeping order"""
    members = existing.get('proxies')
    if not isinstance(members, list):
        members = existing['proxies'] = []

    incoming_members = incoming.get('proxies')
    if not isinstance(incoming_members, list):
        return

    seen = {m for m in members if isinstance(m, str)}
    for name in incoming_members:
        if isinstance(name, str) and name not in seen:
            seen.add(name)
            members.append(name)


def merge_proxy_groups(groups: List[Any], incoming: List[Any]):
    """Fold `incoming` groups into `groups` in place, matching by name"""
    for group in incoming:
        name = _group_name(group)
        target = None
        if name is not None:
            target = next((g for g in groups if _group_name(g) == name), None)
        if target is None:
            groups.append(copy.deepcopy(group))
        else:
            _fold_group(target, group)


def populate_default_selector(groups: List[Any], proxy_names: List[str]):
    for group in groups:
        if _group_name(group) == DEFAULT_SELECTOR_NAME:
            group['proxies'] = list(proxy_names)


def merge_configs(template: ClashConfig, subscriptions: List[ClashConfig]) -> ClashConfig:
    """Combine template with subscriptions, in the order given.

    Proxies and rules are appended, proxy-groups are folded by name and
    extension keys are only added when missing, so template and earlier
    subscriptions win. Subscription ports are ignored.
    """
    out = template.copy()

    for sub in subscriptions:
        out.proxies.extend(copy.deepcopy(sub.proxies))
        out.rules.extend(sub.rules)
        merge_proxy_groups(out.proxy_groups, sub.proxy_groups)
        for key, value in sub.extension.items():
            if key not in out.extension:
                out.extension[key] = copy.deepcopy(value)

    populate_default_selector(out.proxy_groups, _collect_names([template, *subscriptions]))
    logger.debug(
        "merged %d subscription(s): %d proxies, %d groups, %d rules",
        len(subscriptions), len(out.proxies), len(out.proxy_groups), len(out.rules),
    )
    return out


def apply_base_config(merged: ClashConfig, base: ClashConfig) -> ClashConfig:
    """Overlay a base-config onto a merged document.

    Unlike merge_configs, base values win on extension key collisions. Base
    rules replace merged rules, and base proxy-groups are rebuilt with every
    merged proxy as members.
    """
    out = merged.copy()

    if base.port is not None:
        out.port = base.port
    if base.socks_port is not None:
        out.socks_port = base.socks_port
    if base.redir_port is not None:
        out.redir_port = base.redir_port

    # mixed-port replaces the legacy single-purpose listeners
    if 'mixed-port' in base.extension:
        out.port = None
        out.socks_port = None
        out.redir_port = None

    extension = copy.deepcopy(base.extension)
    for key, value in out.extension.items():
        if key not in extension:
            extension[key] = value
    out.extension = extension
    out.key_order = list(dict.fromkeys(base.key_order + out.key_order))

    if base.rules:
        out.rules = list(base.rules)

    if base.proxy_groups:
        names = merged.unique_proxy_names()
        groups = []
        for group in copy.deepcopy(base.proxy_groups):
            if isinstance(group, dict):
                group['proxies'] = list(names)
            groups.append(group)
        out.proxy_groups = groups

    return out


def generate(
    template: ClashConfig,
    subscriptions: List[ClashConfig],
    base: Optional[ClashConfig] = None,
) -> MergeResult:
    """merge_configs followed by apply_base_config when a base is given"""
    merged = merge_configs(template, subscriptions)
    names = _collect_names([template, *subscriptions])
    if base is not None:
        merged = apply_base_config(merged, base)
    return MergeResult(config=merged, proxy_names=names)
