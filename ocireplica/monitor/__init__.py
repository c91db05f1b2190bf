"""Progress reporting for copy and backup runs.

Modules
-------
tracker
    ``StatusTracker`` protocol, ``TrackedTarget`` and the ``tracking``
    scope, plus recording implementations.
renderer
    Rich console output: per-node status lines and summary panels.
"""
