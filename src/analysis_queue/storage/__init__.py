"""SQLite storage plumbing shared by the job and artifact repositories."""
