"""Request coordination, table reads and SQL text handling."""
