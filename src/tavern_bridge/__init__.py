"""Tavern Bridge: relay between Telegram persona bots and one SillyTavern host."""
