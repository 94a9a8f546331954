"""Tavern Bridge server: host WebSocket endpoint, status API, CLI."""
