from .user import User, ActivityLog
from .kds import KitchenOrderLine, ItemMaster, Department, Category

__all__ = [
    "User", "ActivityLog",
    "KitchenOrderLine", "ItemMaster", "Department", "Category",
]
