"""
skillsync -- keep skills, workflows, settings and MCP configs in step
across machines.

Local artifacts and a remote blob store are two replicas that drift
independently. The engine diffs both against the last checkpoint,
settles collisions, and moves only what changed.
"""

import os

__version__ = "0.1.0"

SKILLSYNC_HOME = os.environ.get("SKILLSYNC_HOME", "~/.skillsync")
