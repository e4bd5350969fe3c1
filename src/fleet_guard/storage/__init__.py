"""SQLite persistence for the fleet registry and event log."""
