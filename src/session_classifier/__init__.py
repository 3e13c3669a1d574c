"""Session sampling and parallel LLM classification for conversational bots."""

__version__ = "0.1.0"
