"""Common utilities for ChatMimic Vector Store."""
