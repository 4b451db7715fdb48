"""Backend collaborators: REST, real-time channel and identity."""
