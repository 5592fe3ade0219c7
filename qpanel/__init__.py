"""q-panel - Web control panel for the Q Developer CLI.

Spawns the ``q`` CLI per command, streams its output to a browser over a
WebSocket, and manages local projects, sessions and MCP servers.
"""

__version__ = "0.1.0"
