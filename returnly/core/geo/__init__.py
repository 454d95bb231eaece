"""
Гео: расстояния и провайдеры маршрутов.
"""
