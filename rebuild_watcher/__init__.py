"""Watch a source tree and re-run a build pipeline on every settled change.

This package provides a debounced directory watcher, a process runner with
per-kind mutual exclusion and cooperative cancellation, a fail-fast pipeline
and a coordinator that keeps at most one rebuild running and one queued.
"""

__version__ = "0.1.0"
