"""Side-effect helpers: git, post-apply commands, workspace lock and tracking."""
