"""Fitbit MCP server with persistent OAuth2 token management."""
