"""
Core modules for AI Route Guard.

This package contains the routing pipeline (classification, selection,
guardrails, dispatch), backend health, cost accounting, budget control,
the objective optimizer and the durable retry queue.
"""
