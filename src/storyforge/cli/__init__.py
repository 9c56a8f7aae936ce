"""Command-line tools for the generation pipeline."""
