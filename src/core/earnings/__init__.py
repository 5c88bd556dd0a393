# src/core/earnings/__init__.py
"""
Заработок водителей.
"""
