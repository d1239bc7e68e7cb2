"""Exceptions raised by the deep research pipeline."""


class DeepResearchError(Exception):
    """Base exception for deep research failures."""

    pass


class EmptyQueryError(DeepResearchError):
    """The query was empty after trimming."""

    def __init__(self, message: str = "Query is empty after trimming."):
        super().__init__(message)
        self.message = message


class FinalizeProtocolError(DeepResearchError):
    """A search session was finalized more than once."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Search session {session_id} was already finalized")


class StreamProtocolError(DeepResearchError):
    """An event was written after the terminal event of a session."""

    pass


class StructuredOutputError(DeepResearchError):
    """The model response could not be decoded into the requested schema."""

    def __init__(self, schema_name: str, detail: str):
        self.schema_name = schema_name
        self.detail = detail
        super().__init__(f"Structured output for {schema_name} failed: {detail}")


class SearchProviderError(DeepResearchError):
    """The web search provider failed or returned an unusable payload."""

    pass


class PageFetchError(DeepResearchError):
    """A page could not be fetched or had no readable content."""

    def __init__(self, url: str, message: str):
        self.url = url
        super().__init__(message)


class ConfigurationError(DeepResearchError, ValueError):
    """A required setting is missing."""

    pass
