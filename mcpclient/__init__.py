"""Tools for MCP server packages: manifests, configuration, hub uploads, STDIO execution and bundling."""

__version__ = "0.1.0"
__all__ = ["bundler", "config", "executor", "hub", "manifest"]