"""parley: streaming conversation orchestrator for LLM chat."""

__version__ = "0.1.0"
