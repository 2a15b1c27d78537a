"""
Tenant Registry
"""
from backup_sync.services.tenant.registry import TenantRepository

__all__ = ["TenantRepository"]
