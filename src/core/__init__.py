# src/core/__init__.py
"""
Доменный слой (Core Domain).
Заявки, назначение водителей, поездки, заработок.
Сервисы импортируются по полному пути модуля (src.core.<домен>.service).
"""
