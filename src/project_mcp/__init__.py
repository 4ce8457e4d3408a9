"""
Project Management MCP Package

A Python-based user story tracker built with FastMCP. Stories are kept in a
single JSON file and can be created, listed, edited, moved through their
progress states, and reordered within the Unstarted backlog.
"""

__version__ = "0.1.0"
