"""
Note tasks core package.

This package focuses on the indexing subsystem. It exposes dataclasses for
extracted task/session records, a line-oriented markdown parsing engine, a
keyed record repository, a deterministic aggregator, and a worker that keeps
the index consistent across full rescans and single-document changes.
"""
