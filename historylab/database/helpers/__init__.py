"""Session management helpers."""
