"""Exceptions raised by Feed Digest components."""


class FeedDigestError(Exception):
    """Base class for all Feed Digest errors."""


class ConfigurationError(FeedDigestError):
    """Missing or invalid configuration; raised before any processing starts."""


class FetchError(FeedDigestError):
    """A feed could not be downloaded or parsed."""


class SummarizationError(FeedDigestError):
    """The language-model API call failed or returned nothing usable."""


class DeliveryError(FeedDigestError):
    """A notification could not be delivered to the webhook."""


class FeedSourceError(FeedDigestError):
    """The external feed list could not be retrieved."""


class StorageError(FeedDigestError):
    """Configuration or watermark storage failed."""
