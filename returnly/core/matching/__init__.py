"""
Назначение водителей и пул доступных заказов.
"""
