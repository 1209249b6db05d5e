"""Implementation results and the text rendered for commits, PRs and tickets."""
