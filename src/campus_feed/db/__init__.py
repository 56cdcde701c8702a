"""Local database plumbing used by the SQL-backed gateway."""
