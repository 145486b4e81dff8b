"""
Subscription payload interpreter

A provider may answer with a Clash YAML config, a base64 blob wrapping
either of the other formats, or a plain list of share links. `interpret`
runs an ordered list of strategies over the raw text and returns the first
document one of them produces.
"""

import base64
import binascii
import logging
import re
import unicodedata
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple

from .errors import DecodeExhausted, MalformedShareLink, StructuralError, SubscriptionError
from .model import ClashConfig
from .share_links import ShareLinkParser

logger = logging.getLogger(__name__)

ASCII_WHITESPACE = ' \t\n\r\x0c'
MAX_CONTROL_CHARS = 8

_URLSAFE_ALPHABET = re.compile(r'[A-Za-z0-9_-]*')


@dataclass(frozen=True)
class ParseOptions:
    """Per-call decoder settings"""

    allow_base64: bool


class OutcomeKind(Enum):
    MATCHED = 'matched'
    INVALID = 'invalid'
    NOT_APPLICABLE = 'not-applicable'


@dataclass(frozen=True)
class Outcome:
    kind: OutcomeKind
    config: Optional[ClashConfig] = None
    error: Optional[SubscriptionError] = None

    @classmethod
    def matched(cls, config: ClashConfig) -> 'Outcome':
        return cls(OutcomeKind.MATCHED, config=config)

    @classmethod
    def invalid(cls, error: SubscriptionError) -> 'Outcome':
        return cls(OutcomeKind.INVALID, error=error)

    @classmethod
    def not_applicable(cls) -> 'Outcome':
        return cls(OutcomeKind.NOT_APPLICABLE)


# ==================== Base64 helpers ====================

def _decode_standard(compact: str) -> Optional[bytes]:
    try:
        return base64.b64decode(compact, validate=True)
    except binascii.Error:
        return None


def _decode_urlsafe_unpadded(compact: str) -> Optional[bytes]:
    if not _URLSAFE_ALPHABET.fullmatch(compact) or len(compact) % 4 == 1:
        return None
    try:
        return base64.b64decode(compact + '=' * (-len(compact) % 4), altchars=b'-_', validate=True)
    except binascii.Error:
        return None


def looks_printable(text: str) -> bool:
    """At most MAX_CONTROL_CHARS control characters besides whitespace"""
    controls = sum(
        1 for ch in text
        if unicodedata.category(ch) == 'Cc' and not ch.isspace()
    )
    return controls <= MAX_CONTROL_CHARS


def decode_base64_candidates(raw: str) -> List[str]:
    """Texts obtained by decoding `raw` with each supported alphabet, in
    alphabet order, duplicates and non-text results dropped"""
    compact = ''.join(ch for ch in raw if ch not in ASCII_WHITESPACE)
    if not compact:
        return []

    texts: List[str] = []
    for decode in (_decode_standard, _decode_urlsafe_unpadded):
        data = decode(compact)
        if data is None:
            continue
        try:
            text = data.decode('utf-8')
        except UnicodeDecodeError:
            continue
        if looks_printable(text) and text not in texts:
            texts.append(text)
    return texts


# ==================== Strategies ====================

class _Payload:
    """Raw text plus lazily computed base64 decodings"""

    def __init__(self, raw: str, options: ParseOptions):
        self.raw = raw
        self.options = options
        self._decoded: Optional[List[str]] = None

    @property
    def decoded(self) -> List[str]:
        if self._decoded is None:
            self._decoded = decode_base64_candidates(self.raw)
        return self._decoded


def _structured(text: str) -> Outcome:
    try:
        return Outcome.matched(ClashConfig.from_yaml(text))
    except StructuralError:
        return Outcome.not_applicable()


def _share_links(text: str) -> Outcome:
    try:
        proxies = ShareLinkParser.parse_lines(text)
    except MalformedShareLink as e:
        return Outcome.invalid(e)
    if not proxies:
        return Outcome.not_applicable()
    return Outcome.matched(ClashConfig(proxies=proxies))


def native_yaml(payload: _Payload) -> Outcome:
    return _structured(payload.raw)


def base64_yaml(payload: _Payload) -> Outcome:
    if not payload.options.allow_base64:
        return Outcome.not_applicable()
    for text in payload.decoded:
        outcome = _structured(text)
        if outcome.kind is OutcomeKind.MATCHED:
            return outcome
    return Outcome.not_applicable()


def base64_share_links(payload: _Payload) -> Outcome:
    if not payload.options.allow_base64:
        return Outcome.not_applicable()
    for text in payload.decoded:
        outcome = _share_links(text)
        if outcome.kind is not OutcomeKind.NOT_APPLICABLE:
            return outcome
    return Outcome.not_applicable()


def plain_share_links(payload: _Payload) -> Outcome:
    return _share_links(payload.raw)


STRATEGIES: List[Tuple[str, Callable[[_Payload], Outcome]]] = [
    ('native-yaml', native_yaml),
    ('base64-yaml', base64_yaml),
    ('base64-share-links', base64_share_links),
    ('plain-share-links', plain_share_links),
]


def interpret(raw: str, options: ParseOptions) -> ClashConfig:
    """Decode one subscription payload.

    Raises MalformedShareLink when a share-link strategy recognized the
    payload but a line is broken, DecodeExhausted when nothing applied.
    """
    payload = _Payload(raw, options)
    for name, strategy in STRATEGIES:
        outcome = strategy(payload)
        if outcome.kind is OutcomeKind.MATCHED:
            logger.debug("payload decoded by %s strategy", name)
            return outcome.config
        if outcome.kind is OutcomeKind.INVALID:
            logger.debug("%s strategy rejected payload: %s", name, outcome.error)
            raise outcome.error
    raise DecodeExhausted(
        "subscription payload is neither valid Clash YAML nor supported share links"
    )
