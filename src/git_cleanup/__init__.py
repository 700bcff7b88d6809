"""Git working copy cleanup tool.

Features:
- Check out and update the default branch
- Prune remote-tracking branches and delete local branches whose upstream is gone
- Move worktrees off deleted branches onto their pool branch, keeping local changes
- Live status output while git runs
- Automatic retry of transient git failures
"""

__version__ = "0.3.0"
