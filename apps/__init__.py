"""Application modules for ChatMimic Vector Store."""
