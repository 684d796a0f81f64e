"""Review Copilot - automated merge request and push review for GitLab."""

__version__ = "0.1.0"
