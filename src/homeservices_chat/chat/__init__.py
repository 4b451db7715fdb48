"""Presence tracking, room sessions and the chat feature facade."""
