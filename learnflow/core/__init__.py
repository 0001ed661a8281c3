"""
core/__init__.py

Core orchestration modules.

This package contains the central coordination logic for the learning assistant:
- classifier: deterministic query classification
- modes: Mode State Machine and Mode Adapter
- router: the Query Router (classify, fan out, combine, apply mode)
- exceptions: the error taxonomy shared by the core

These modules handle the high-level flow of learner queries through the system.
"""
