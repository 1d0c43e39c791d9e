from typing import Optional


class TanaAgentError(RuntimeError):
    """Base error for Tana automation failures."""

    def __init__(self, message: str, step: str = "", artifact: Optional[str] = None) -> None:
        super().__init__(message)
        self.step = step
        self.artifact = artifact or ""


class NotFoundError(TanaAgentError):
    """Selector or element never appeared within its bounded wait."""


class InteractionTimeoutError(TanaAgentError):
    """Element was found but the click/fill did not complete in time."""


class SessionExpiredError(TanaAgentError):
    """Login prompt shown in place of the workspace."""


class ConfigurationInvalidError(TanaAgentError):
    """Required link/target/status missing at startup."""


class AgentBusyError(RuntimeError):
    """Another browser run already holds the session."""
