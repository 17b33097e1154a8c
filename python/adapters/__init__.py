"""Output adapters for engine completions."""
