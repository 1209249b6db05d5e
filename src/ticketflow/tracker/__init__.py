"""Issue tracker integration (Jira REST v3)."""
