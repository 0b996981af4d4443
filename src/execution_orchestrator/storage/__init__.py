"""SQLite storage for the execution registry."""
