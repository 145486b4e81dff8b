"""Merge Clash/Mihomo subscriptions into one config"""

from .errors import (
    DecodeExhausted,
    FetchError,
    MalformedShareLink,
    MergeError,
    StructuralError,
    SubscriptionError,
)
from .interpreter import ParseOptions, interpret
from .merger import DEFAULT_SELECTOR_NAME, MergeResult, apply_base_config, generate, merge_configs
from .model import ClashConfig
from .share_links import ShareLinkParser

__version__ = '0.3.0'
