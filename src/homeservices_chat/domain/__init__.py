"""Domain models for the chat core."""
