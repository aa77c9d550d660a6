"""Portal chat backend application."""
