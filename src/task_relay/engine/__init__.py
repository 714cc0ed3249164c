"""Autonomous task-continuation engine.

Tasks are persisted in SQLite and driven forward by continuation signals until
they finish. A task that claims to have written a file only reaches
``completed`` once its transcript shows a successful write followed by a read
that returned non-empty content. Rounds that repeat themselves without new tool
calls are cut off by the stalled-loop detector, and transport failures are
retried with jittered backoff up to a configured bound.
"""
