"""Inbound channel adapters (Instagram, Telegram, web widget)."""
