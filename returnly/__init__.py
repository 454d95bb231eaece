"""
Returnly: движок жизненного цикла заказов, ценообразования и расчётов
для сервиса возвратов с курьерским забором.
"""

__version__ = "1.0.0"
