"""In-memory stores shared by the chat components."""
