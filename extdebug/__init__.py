"""Extension debugging MCP server: snapshots, locators, waits and annotated responses."""

__version__ = "0.1.0"
