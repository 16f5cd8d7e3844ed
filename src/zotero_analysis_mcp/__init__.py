"""MCP server for a Zotero collection and its Elicit Analysis notes."""

__version__ = "0.1.0"
