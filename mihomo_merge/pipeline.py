"""
One generation cycle: template + subscriptions (+ base-config) -> config

Shared by the command line and the HTTP API.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

import requests

from .errors import StructuralError, SubscriptionError
from .fetch import load_subscription
from .interpreter import ParseOptions
from .merger import MergeResult, generate
from .model import ClashConfig
from .storage import AppPaths, Subscription

logger = logging.getLogger(__name__)


@dataclass
class LoadReport:
    configs: List[ClashConfig] = field(default_factory=list)
    loaded: List[str] = field(default_factory=list)
    skipped: List[Tuple[str, str]] = field(default_factory=list)


def load_document(path: Path, what: str) -> ClashConfig:
    """Read a template or base-config; any failure is fatal"""
    try:
        text = Path(path).read_text(encoding='utf-8')
    except OSError as e:
        raise StructuralError(f"failed to load {what} from {path}: {e}") from e
    try:
        return ClashConfig.from_yaml(text)
    except StructuralError as e:
        raise StructuralError(f"failed to load {what} from {path}: {e}") from e


def load_sources(
    subs: List[Subscription],
    session: requests.Session,
    paths: AppPaths,
    options: ParseOptions,
) -> LoadReport:
    """Load every subscription, skipping (and logging) the ones that fail"""
    report = LoadReport()
    for sub in subs:
        try:
            config = load_subscription(sub, session, paths, options)
        except SubscriptionError as e:
            logger.error("failed to load subscription %s: %s", sub.id or sub.name, e)
            report.skipped.append((sub.id, str(e)))
            continue
        if config is not None:
            report.configs.append(config)
            report.loaded.append(sub.id)
    return report


def run_generation(
    template: ClashConfig,
    report: LoadReport,
    base: Optional[ClashConfig] = None,
) -> MergeResult:
    result = generate(template, report.configs, base)
    logger.info(
        "generated config from %d source(s), %d skipped: %d proxies, %d groups, %d rules",
        len(report.loaded), len(report.skipped),
        len(result.config.proxies), len(result.config.proxy_groups), len(result.config.rules),
    )
    return result
