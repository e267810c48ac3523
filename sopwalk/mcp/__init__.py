"""Model Context Protocol tool collaborator.

- A minimal stdio MCP client (newline-delimited JSON-RPC)
- An adapter exposing an MCP server's tools to the tool gateway
"""
