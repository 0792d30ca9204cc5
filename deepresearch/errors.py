from __future__ import annotations


class ResearchError(Exception):
    """Base class for errors raised by the research service."""


class InvalidRequestError(ResearchError):
    """A request field is missing or malformed."""


class AuthenticationRequiredError(ResearchError):
    """The caller did not supply a user identity."""


class SessionNotFoundError(ResearchError):
    def __init__(self, session_id: str):
        super().__init__(f"Research session not found: {session_id}")
        self.session_id = session_id


class ProviderError(ResearchError):
    """An upstream LLM provider call failed."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider} research failed: {message}")
        self.provider = provider
        self.message = message


class DeliveryError(ResearchError):
    """Rendering or sending the report failed."""


class StoreError(ResearchError):
    """The session store rejected or failed an operation."""
