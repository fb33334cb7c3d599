"""Read-only HTTP API over the migration run log."""
