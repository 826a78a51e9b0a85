"""AgentDeck: durable agent conversations, streaming turns and reusable checkpoints."""

from agentdeck._version import __version__

__all__ = ["__version__"]
