"""SQLite storage for job descriptors."""
