"""Coordinator for a fleet of CLI agents working on one repository.

A request is decomposed into a small task DAG, tasks are routed to agent
types by capability, and a bounded pool runs each level concurrently, every
task in its own git worktree. SQLite is the single source of truth for task
and agent state; a restarted process rebuilds its view from it.
"""
