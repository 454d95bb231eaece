"""
Доменное ядро: заказы, ценообразование, назначение, расчёты, администрирование.
"""
