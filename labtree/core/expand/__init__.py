"""Incremental tree expansion engine.

The controller owns no tree of its own: it reads and publishes snapshots through
a SnapshotCell so the presentation layer and concurrent chains share one view.
"""
