"""File Simulator control CLI."""
