"""
Rule helpers used after merging: built-in dev rules and quick custom rules
"""

from dataclasses import asdict, dataclass
from typing import Iterable, List, Optional, Tuple

from .merger import DEFAULT_SELECTOR_NAME
from .model import ClashConfig

DEFAULT_DEV_RULE_VIA = 'Proxy'

# Developer/AI endpoints that should go through a proxy.
# DOMAIN is an exact host match, DOMAIN-SUFFIX also matches subdomains.
DEV_RULE_TARGETS: List[Tuple[str, str]] = [
    # Git & code hosting
    ('DOMAIN-SUFFIX', 'github.com'),
    ('DOMAIN-SUFFIX', 'githubusercontent.com'),
    ('DOMAIN-SUFFIX', 'gitlab.com'),
    ('DOMAIN-SUFFIX', 'bitbucket.org'),
    # Language ecosystems / registries
    ('DOMAIN-SUFFIX', 'registry.npmjs.org'),
    ('DOMAIN-SUFFIX', 'nodejs.org'),
    ('DOMAIN-SUFFIX', 'pypi.org'),
    ('DOMAIN-SUFFIX', 'files.pythonhosted.org'),
    ('DOMAIN-SUFFIX', 'crates.io'),
    ('DOMAIN-SUFFIX', 'static.crates.io'),
    ('DOMAIN-SUFFIX', 'rubygems.org'),
    ('DOMAIN-SUFFIX', 'golang.org'),
    ('DOMAIN-SUFFIX', 'go.dev'),
    ('DOMAIN-SUFFIX', 'golang.google.cn'),
    ('DOMAIN-SUFFIX', 'rust-lang.org'),
    # Kubernetes / cloud tooling
    ('DOMAIN-SUFFIX', 'k8s.io'),
    ('DOMAIN-SUFFIX', 'dl.k8s.io'),
    ('DOMAIN-SUFFIX', 'k3s.io'),
    # Containers / registries
    ('DOMAIN-SUFFIX', 'docker.com'),
    ('DOMAIN-SUFFIX', 'docker.io'),
    ('DOMAIN-SUFFIX', 'registry-1.docker.io'),
    ('DOMAIN-SUFFIX', 'ghcr.io'),
    ('DOMAIN-SUFFIX', 'gcr.io'),
    ('DOMAIN-SUFFIX', 'pkg.dev'),
    ('DOMAIN-SUFFIX', 'quay.io'),
    # Nix infra
    ('DOMAIN', 'cache.nixos.org'),
    # AI APIs
    ('DOMAIN-SUFFIX', 'api.openai.com'),
    ('DOMAIN-SUFFIX', 'claude.ai'),
]

RULE_KIND_TAGS = {
    'domain': 'DOMAIN',
    'suffix': 'DOMAIN-SUFFIX',
    'keyword': 'DOMAIN-KEYWORD',
}


# ==================== Dev rules ====================

def build_dev_rules(via: str) -> List[str]:
    return [f"{kind},{target},{via}" for kind, target in DEV_RULE_TARGETS]


def resolve_dev_rules_via(via: str, default_via: str, config: ClashConfig) -> str:
    """Pick the proxy/group dev rules should point at"""
    if config.has_target(via):
        return via

    # An explicit choice is kept even if missing; mihomo reports it later
    if via != default_via:
        return via

    group_names = config.proxy_group_names()
    if DEFAULT_SELECTOR_NAME in group_names:
        return DEFAULT_SELECTOR_NAME
    if group_names:
        return group_names[0]
    proxy_names = config.proxy_names()
    if proxy_names:
        return proxy_names[0]
    return 'DIRECT'


# ==================== Custom rules ====================

# Well-known targets written in their canonical spelling
CANONICAL_VIA = {
    'direct': 'DIRECT',
    'reject': 'REJECT',
    'proxy': 'Proxy',
}


def normalize_via(via: str) -> str:
    return CANONICAL_VIA.get(via.strip().lower(), via.strip())


def dev_domains() -> List[str]:
    return sorted({target for _, target in DEV_RULE_TARGETS})


@dataclass
class CustomRule:
    domain: str
    kind: str = 'suffix'
    via: str = DEFAULT_DEV_RULE_VIA

    def __post_init__(self):
        # Unknown kinds fall back to suffix matching
        self.kind = self.kind.lower() if self.kind.lower() in RULE_KIND_TAGS else 'suffix'
        self.domain = self.domain.strip()
        self.via = normalize_via(self.via)
        if not self.domain:
            raise ValueError("domain must not be empty")
        if not self.via:
            raise ValueError("via must not be empty")

    @property
    def tag(self) -> str:
        return RULE_KIND_TAGS[self.kind]

    def to_line(self) -> str:
        return f"{self.tag},{self.domain},{self.via}"

    def to_dict(self) -> dict:
        return asdict(self)


def custom_rule_lines(rules: Iterable[CustomRule]) -> List[str]:
    return [rule.to_line() for rule in rules]


def remove_custom_rules(rules: List[CustomRule], domain: str, via: Optional[str] = None) -> List[CustomRule]:
    """Drop rules for `domain`; with `via`, only those routed through it"""
    domain = domain.strip()
    return [
        rule for rule in rules
        if rule.domain != domain or (via is not None and rule.via != normalize_via(via))
    ]


def prepend_rules(config: ClashConfig, lines: List[str]):
    """Put `lines` in front of the config's rules, in place"""
    config.rules = list(lines) + config.rules


def domain_matches_rule(tag: str, target: str, domain: str) -> bool:
    d = domain.lower()
    t = target.lower()
    if tag == 'DOMAIN':
        return d == t
    if tag == 'DOMAIN-SUFFIX':
        return d == t or d.endswith('.' + t)
    if tag == 'DOMAIN-KEYWORD':
        return t in d
    return False


def check_domain(domain: str, custom_rules: Iterable[CustomRule]) -> Tuple[str, str]:
    """Return ('proxy' | 'direct', matched rule text) for a domain"""
    for rule in custom_rules:
        if domain_matches_rule(rule.tag, rule.domain, domain):
            decision = 'direct' if rule.via.upper() == 'DIRECT' else 'proxy'
            return decision, rule.to_line()
    for tag, target in DEV_RULE_TARGETS:
        if domain_matches_rule(tag, target, domain):
            return 'proxy', f"{tag},{target}"
    return 'direct', ''
