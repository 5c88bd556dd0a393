# src/core/assignment/__init__.py
"""
Подбор водителей для заявок.
"""
