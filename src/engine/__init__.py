"""Plan/apply engine for declarative stacks.

Builds a dependency graph from a Stack, diffs desired properties against
persisted state (and optionally the live cloud), and applies the resulting
plan in dependency order through a provider backend.
"""
