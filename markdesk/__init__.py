"""Job orchestration engine for a personal bookmark library."""
