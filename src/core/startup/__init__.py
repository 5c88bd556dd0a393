# src/core/startup/__init__.py
"""
Действия при старте процесса.
"""
