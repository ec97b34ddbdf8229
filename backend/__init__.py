"""
Control Panel Backend - HTTP adapter for the task state engine.

This package provides a FastAPI backend that receives host lifecycle
messages, reconciles them into the task store, and serves the snapshot,
progress and segment views to the Control Panel frontend.
"""
