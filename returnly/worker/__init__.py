"""
Фоновые воркеры.
"""
