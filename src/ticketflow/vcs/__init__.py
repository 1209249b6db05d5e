"""Version control over the git command line."""
