"""ptyskill — managed interactive PTY sessions for programmatic clients."""

__version__ = "0.2.0"
