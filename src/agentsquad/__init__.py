"""agentsquad - run several interactive agent sessions side by side.

Each session pairs an isolated git worktree with a persistent tmux session.
"""

__version__ = "0.4.0"
