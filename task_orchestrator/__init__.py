"""
Task Orchestrator: drives a backlog of development tasks to completion with
Claude coding agents, each working in an isolated git workspace.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

__version__ = "0.1.0"
