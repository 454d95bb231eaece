"""
Администрирование: проверка роли и массовые операции.
"""
