"""
Общие модели и события, которыми обмениваются модули.
"""
