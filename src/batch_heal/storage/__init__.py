"""SQLite storage primitives for the checkpoint database."""
