# =============================================================================
# ontime_core/services/__init__.py
# Service layer primitives
# =============================================================================

from .base_service import ServiceResult, BaseService

__all__ = ["ServiceResult", "BaseService"]
