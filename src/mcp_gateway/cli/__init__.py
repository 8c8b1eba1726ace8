"""
Command-line interface for MCP Gateway.
"""
