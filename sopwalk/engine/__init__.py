"""Execution core: context store, condition evaluator, walker, tool gateway
and the per-session turn pipeline.

Import from the submodules (or from ``sopwalk``); this package does not
re-export them because ``sopwalk.graph`` depends on the condition and context
modules.
"""
