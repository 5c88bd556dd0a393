# src/services/lifecycle/__init__.py
"""
Health и статистика воркеров жизненного цикла.
"""
