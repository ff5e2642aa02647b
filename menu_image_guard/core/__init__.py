"""
Core modules for Menu Image Guard.

This package contains title normalization, pricing, the error taxonomy,
the pipeline orchestrator and the detached task runner.
"""
