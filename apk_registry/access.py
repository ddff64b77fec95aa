"""
Access control for registry mutations.

Only the registry coordinator may add or remove operators from quorums.
"""


class CoordinatorGate:
    """Authorizes exactly one caller: the registry coordinator"""

    def __init__(self, coordinator: str):
        if not coordinator:
            raise ValueError("Coordinator address is required")
        self.coordinator = coordinator.lower()

    def is_authorized(self, caller: str) -> bool:
        return bool(caller) and caller.lower() == self.coordinator
