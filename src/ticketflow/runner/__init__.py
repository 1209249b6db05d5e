"""Build and test validation runner."""
