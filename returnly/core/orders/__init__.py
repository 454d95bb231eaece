"""
Заказы: модели, жизненный цикл, хранилище.
"""
