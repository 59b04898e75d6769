"""Custom exceptions for ACAP.

Only ``ConfigurationError`` and its subclasses are meant to escape the
pipeline; everything else is caught at component boundaries and recorded
on the component's result type.
"""


class AcapError(Exception):
    """Base exception for all ACAP errors."""

    pass


class ConfigurationError(AcapError):
    """Invalid configuration that retrying cannot fix."""

    pass


class InvalidSourceError(ConfigurationError):
    """Exception raised when a source has an unusable URL or definition."""

    pass


class InvalidExtractionRuleError(ConfigurationError):
    """Exception raised when a stored extraction rule is missing required selectors."""

    pass


class FetchError(AcapError):
    """Transient failure fetching a URL over HTTP."""

    pass


class NavigationError(FetchError):
    """Exception raised when a browser navigation fails or times out."""

    pass


class BrowserUnavailableError(FetchError):
    """Exception raised when the browser cannot be launched or a page cannot be opened."""

    pass


class ClassifierError(AcapError):
    """Base exception for classification collaborator transport errors."""

    pass


class ClassifierRateLimitError(ClassifierError):
    """Exception raised when the classifier API rate limit is hit (429)."""

    pass


class StoreError(AcapError):
    """Exception raised when the article store cannot complete an operation."""

    pass


class ArticleNotFoundError(StoreError):
    """Exception raised when an article id does not exist."""

    pass
