from .auth import User, Role, UserRole, Permission, RolePermission, SessionToken, UserPermissionOverride
from .security import SecurityEvent
from .consignments import Agreement, ConsignedProduct, CountingSession, CountingLine
from .boletas import RestockBoleta, BoletaLine, BoletaHistoryEntry

__all__ = [
    'User', 'Role', 'UserRole', 'Permission', 'RolePermission',
    'SessionToken', 'UserPermissionOverride', 'SecurityEvent',
    'Agreement', 'ConsignedProduct', 'CountingSession', 'CountingLine',
    'RestockBoleta', 'BoletaLine', 'BoletaHistoryEntry',
]
