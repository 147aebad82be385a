"""SQLite persistence helpers and schema."""
