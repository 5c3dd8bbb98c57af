from __future__ import annotations


class AuthorizationError(Exception):
    """Base error for role resolution and role administration failures."""


class UnknownRoleError(AuthorizationError):
    def __init__(self, role: object) -> None:
        self.role = role
        super().__init__(f"Unknown role: {role}")


class SystemRoleProtectedError(AuthorizationError):
    def __init__(self, role_id: str, operation: str) -> None:
        self.role_id = role_id
        self.operation = operation
        super().__init__(f"System role '{role_id}' cannot be {operation}")


class RoleInUseError(AuthorizationError):
    def __init__(self, role_id: str, user_count: int) -> None:
        self.role_id = role_id
        self.user_count = user_count
        super().__init__(f"Role '{role_id}' is assigned to {user_count} user(s)")
