"""dkit: foreground process runner with a persistent registry and an MCP control server."""

__version__ = "0.1.0"

__all__ = ["__version__"]
