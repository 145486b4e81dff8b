"""
Exception types shared by the parser, the merge engine and the collaborators
"""


class MergeError(Exception):
    """Base class for every error raised by mihomo_merge"""


class StructuralError(MergeError):
    """Text could not be read as a Clash config document"""


class SubscriptionError(MergeError):
    """A single subscription source failed; callers skip it and continue"""


class DecodeExhausted(SubscriptionError):
    """No decoding strategy produced a document for a payload"""


class MalformedShareLink(SubscriptionError):
    """A share-link line is missing a required field"""

    def __init__(self, family: str, reason: str):
        super().__init__(f"{family} share link: {reason}")
        self.family = family
        self.reason = reason


class FetchError(SubscriptionError):
    """A remote subscription or resource could not be fetched (and no cache exists)"""
