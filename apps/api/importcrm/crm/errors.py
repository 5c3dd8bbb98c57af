from __future__ import annotations


class RuleError(Exception):
    """Base error for pipeline rule storage and execution."""


class RuleNotFoundError(RuleError):
    def __init__(self, rule_id: str) -> None:
        self.rule_id = rule_id
        super().__init__(f"Rule '{rule_id}' not found")


class SystemRuleProtectedError(RuleError):
    def __init__(self, rule_id: str) -> None:
        self.rule_id = rule_id
        super().__init__(f"Cannot delete system rule '{rule_id}'")


class ActionValidationError(RuleError):
    """Raised by an action executor when the deal does not satisfy the action's requirement."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)


class ActionConfigurationError(RuleError):
    """Raised when a stored action payload cannot be parsed into its typed parameters."""

    def __init__(self, action_type: str, message: str) -> None:
        self.action_type = action_type
        super().__init__(f"{action_type}: {message}")
