"""Cross-cutting utilities: configuration, logging, retry."""
