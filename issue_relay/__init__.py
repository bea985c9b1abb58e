"""Bidirectional issue relay between GitLab and Jira"""

__version__ = "1.0.0"
