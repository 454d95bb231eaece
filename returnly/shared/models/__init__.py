"""
Общие модели для HTTP слоя.
"""

from returnly.shared.models.common import ErrorResponse, HealthStatus

__all__ = ["ErrorResponse", "HealthStatus"]
