"""Infrastructure adapters: payload translation, normalization, persistence."""
