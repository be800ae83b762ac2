"""Abstract base and errors for the external service clients."""

from abc import ABC, abstractmethod


class ProviderError(Exception):
    """Raised when a provider call fails."""

    def __init__(self, provider_name: str, message: str) -> None:
        self.provider_name = provider_name
        super().__init__(f"[{provider_name}] {message}")


class GenerationError(ProviderError):
    """The generation service failed or produced no usable content."""


class SearchError(ProviderError):
    """The search service failed after exhausting its retry policy."""


class ServiceClient(ABC):
    """Abstract base for the generation and search clients."""

    @abstractmethod
    def name(self) -> str:
        """Return the short service name (e.g. 'openai', 'perplexity')."""
        ...

    @abstractmethod
    def model_string(self) -> str:
        """Return the configured model identifier string."""
        ...

    @abstractmethod
    async def ping(self) -> None:
        """Issue the cheapest possible real request.

        Raises:
            ProviderError: If the service is unreachable or returns nothing.
        """
        ...
