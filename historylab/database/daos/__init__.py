"""Data access objects: stateless query helpers that receive the active session."""
