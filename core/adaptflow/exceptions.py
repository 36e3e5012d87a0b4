"""Exceptions raised by the engine at construction time or inside steps."""


class AdaptflowError(Exception):
    """Base class for adaptflow errors."""


class GraphValidationError(AdaptflowError):
    """A graph failed structural validation when compiled."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("Invalid graph: " + "; ".join(self.errors))


class StateAccessError(AdaptflowError):
    """A step touched a state key it did not declare."""

    def __init__(self, node_id: str, key: str, mode: str):
        self.node_id = node_id
        self.key = key
        self.mode = mode
        super().__init__(f"Node '{node_id}' is not allowed to {mode} state key '{key}'")
