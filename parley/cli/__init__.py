"""Command-line chat client."""
