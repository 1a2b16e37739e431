"""External service integrations.

Capability interfaces and command-line adapters for the services agentsquad
drives: git worktrees for workspace isolation and tmux as the process
backend. The orchestrator depends on the interfaces only, which keeps the
adapters easy to replace with fakes during testing.
"""
