"""Chat-ops merge automation for GitHub pull requests."""
