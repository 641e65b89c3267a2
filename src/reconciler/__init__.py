"""Declarative resource reconciler.

Builds a dependency graph from a resource document, plans the changes
needed to reach the desired state, and applies them through pluggable
providers while persisting per-resource state between runs.
"""
