"""WorkFlowy outline MCP server with retrying operations and bounded tree projections."""

__version__ = "0.1.0"
