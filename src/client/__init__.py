"""Command-line mesh call participant."""
