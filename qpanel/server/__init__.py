"""Web server: REST API and WebSocket streaming for the Q panel."""
