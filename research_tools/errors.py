class ResearchError(Exception):
    pass


class SchemaViolationError(ResearchError):
    """Decision output that cannot be parsed or names an action not legal for this step."""

    def __init__(self, message: str, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class UpstreamUnavailableError(ResearchError):
    def __init__(self, collaborator: str, message: str) -> None:
        super().__init__(f"{collaborator}: {message}")
        self.collaborator = collaborator


class InsufficientQuotaError(UpstreamUnavailableError):
    pass
