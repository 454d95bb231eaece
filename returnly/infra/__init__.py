"""
Инфраструктурный слой: PostgreSQL, Redis, RabbitMQ.
"""
