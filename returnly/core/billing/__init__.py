"""
Расчёты: выплаты водителям, списания и возвраты.
"""
