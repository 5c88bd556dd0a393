# src/services/__init__.py
"""
HTTP-сервисы приложения.

Сервисы:
- lifecycle: health-проверки и статистика очереди отложенных задач
"""

__all__: list[str] = []
