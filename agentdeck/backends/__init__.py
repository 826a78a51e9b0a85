from agentdeck.backends.base import AgentBackend, BackendRequest, BackendResponse
from agentdeck.backends.cli_backend import CliAgentBackend

__all__ = ["AgentBackend", "BackendRequest", "BackendResponse", "CliAgentBackend"]
